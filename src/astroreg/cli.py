"""
Command-line interface for astroreg.

Usage:
    astroreg score <frames...> [--keep 0.92] [--json scores.json]
    astroreg align <reference> <targets...> [--mode full] [--out DIR]
    astroreg composite <layers...> [--framing cog] [--out DIR]
    astroreg annotations {detect,sanitize,check,edit} <bundle.json> ...

Frames are single-channel FITS or ``.npy`` files.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from pathlib import Path

from .align import align_frame, save_transforms
from .cli_output import (
    Colors,
    Symbols,
    create_progress_bar,
    print_banner,
    print_error,
    print_header,
    print_info,
    print_metric,
    print_path,
    print_success,
    print_summary_box,
    print_warning,
    setup_terminal,
)
from .composite import CompositeRequest, register_composite_layers
from .config import (
    ALIGNMENT_MODES,
    DETECTION_PROFILES,
    FRAMING_MODES,
    AlignmentOptions,
    MergePolicy,
    QualityOptions,
    SanitizeOptions,
    UsabilityOptions,
    default_quality_detection,
    resolve_detection_options,
)
from .detection import detect_stars
from .geometry import SUPPORTED_EDITS, apply_edit_to_bundle, parse_edit
from .io import list_frames, read_frame, write_frame
from .linkage import (
    evaluate_star_annotation_usability,
    make_pixel_sampler,
    merge_detected_with_manual,
    sanitize_star_annotations,
    to_detected_stars,
)
from .quality import evaluate_frames_batch, quality_to_weights, select_frames
from .schema import StarAnnotationBundle, ImageGeometry, load_bundle, save_bundle
from .utils import format_duration, get_platform_info, get_version, get_version_banner, now_ms

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for CLI."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%H:%M:%S",
    )


def _registered_path(out_dir: Path, source: Path) -> Path:
    return out_dir / f"{source.stem}_reg{source.suffix}"


def _annotation_stars(bundle_path: str | None, pixels, width: int, height: int) -> list | None:
    """Stars from a usable annotation bundle, or None."""
    if bundle_path is None:
        return None
    bundle = load_bundle(bundle_path)
    usability = evaluate_star_annotation_usability(
        bundle, UsabilityOptions(image_width=width, image_height=height)
    )
    if not usability.usable:
        print_warning(f"Annotations not used ({usability.reason}): {bundle_path}")
        return None
    return to_detected_stars(bundle.points, make_pixel_sampler(pixels, width, height))


# =============================================================================
# Commands
# =============================================================================


def cmd_score(args: argparse.Namespace) -> int:
    """Score frames, rank them and report the kept/rejected split."""
    frames = list_frames(args.frames)
    if not frames:
        print_error("No frames to score")
        return 1

    detection = default_quality_detection()
    if args.profile is not None:
        detection = resolve_detection_options(args.profile)
    options = QualityOptions(detection_options=detection)

    t0 = time.time()
    buffers = [read_frame(path) for path in frames]
    metrics = evaluate_frames_batch(buffers, options, show_progress=not args.quiet)
    kept, rejected = select_frames(metrics, keep_fraction=args.keep, min_score=args.min_score)
    weights = quality_to_weights(metrics)
    kept_set = set(kept)

    if not args.quiet:
        print_header("Frame quality")
        print(f"{'#':>4}  {'Frame':<40}  {'Score':>6}  {'Stars':>6}  {'FWHM':>6}  {'SNR':>7}  Status")
        print("-" * 90)
        for i in kept + rejected:
            m = metrics[i]
            status = (
                f"{Colors.KEEP}KEEP{Colors.RESET}" if i in kept_set else f"{Colors.DIM}reject{Colors.RESET}"
            )
            print(
                f"{i + 1:>4}  {frames[i].name:<40}  {m.score:>6.0f}  {m.star_count:>6d}  "
                f"{m.median_fwhm:>6.2f}  {m.snr:>7.1f}  {status}"
            )
        print_summary_box([
            f"Frames scored: {len(metrics)}",
            f"Kept: {len(kept)}  Rejected: {len(rejected)}",
            f"Elapsed: {format_duration(time.time() - t0)}",
        ])

    if args.json:
        payload = {
            "version": get_version(),
            "platform": get_platform_info(),
            "frames": [
                {
                    "path": str(path),
                    "score": m.score,
                    "weight": weights[i],
                    "kept": i in kept_set,
                    "starCount": m.star_count,
                    "medianFwhm": m.median_fwhm,
                    "snr": m.snr,
                    "roundness": m.roundness,
                    "backgroundMedian": m.background_median,
                    "backgroundNoise": m.background_noise,
                }
                for i, (path, m) in enumerate(zip(frames, metrics))
            ],
        }
        with open(args.json, "w") as f:
            json.dump(payload, f, indent=2)
        print_path("Scores", args.json)
    return 0


def cmd_align(args: argparse.Namespace) -> int:
    """Align every target frame onto the reference frame."""
    ref_pixels, width, height = read_frame(args.reference)
    targets = list_frames(args.targets)
    if not targets:
        print_error("No target frames")
        return 1

    out_dir = Path(args.out) if args.out else None
    ref_override = _annotation_stars(args.ref_annotations, ref_pixels, width, height)
    detection = resolve_detection_options(args.profile) if args.profile else None

    transforms = []
    n_failed = 0
    pbar = create_progress_bar(total=len(targets), desc="Aligning", disable=args.quiet)
    with pbar:
        for path in targets:
            pixels, w, h = read_frame(path)
            if (w, h) != (width, height):
                print_error(f"{path.name}: size {w}x{h} differs from reference {width}x{height}")
                return 1
            options = AlignmentOptions(
                search_radius=args.search_radius,
                fallback_to_translation=args.fallback,
                ref_stars_override=ref_override,
                detection_options=detection,
            )
            result = align_frame(ref_pixels, pixels, width, height, args.mode, options)
            transforms.append(result.transform)
            if not result.success:
                n_failed += 1
            elif out_dir is not None:
                write_frame(_registered_path(out_dir, path), result.aligned, width, height,
                            overwrite=args.overwrite)
            pbar.set_postfix(matches=result.transform.matched_stars)
            pbar.update(1)

    if args.save_transforms:
        save_transforms(
            transforms,
            args.save_transforms,
            metadata={
                "reference": str(args.reference),
                "targets": [str(p) for p in targets],
                "mode": args.mode,
                "width": width,
                "height": height,
            },
        )

    if not args.quiet:
        print_header("Alignment")
        for path, t in zip(targets, transforms):
            if t.success:
                dx, dy = t.translation
                print(
                    f"  {Colors.SUCCESS}{Symbols.CHECK}{Colors.RESET} {path.name}: "
                    f"dx={dx:+.2f} dy={dy:+.2f} matches={t.matched_stars} "
                    f"rms={t.rms_error:.3f} fallback={t.fallback_used.value}"
                )
            else:
                print(f"  {Colors.ERROR}{Symbols.CROSS}{Colors.RESET} {path.name}: no solution")
        print_metric("Aligned", f"{len(targets) - n_failed}/{len(targets)}")

    return 0 if n_failed < len(targets) else 1


def cmd_composite(args: argparse.Namespace) -> int:
    """Register layers onto the first one and frame them on a common canvas."""
    paths = list_frames(args.layers)
    if not paths:
        print_error("No layers")
        return 1

    loaded = [read_frame(path) for path in paths]
    width, height = loaded[0][1], loaded[0][2]
    request = CompositeRequest(
        layers=[pixels for pixels, _, _ in loaded],
        width=width,
        height=height,
        mode=args.mode,
        framing=args.framing,
    )
    result = asyncio.run(register_composite_layers(request))

    if args.out:
        out_dir = Path(args.out)
        for path, layer in zip(paths, result.layers):
            write_frame(_registered_path(out_dir, path), layer, result.width, result.height,
                        overwrite=args.overwrite)
    if args.save_transforms:
        crop = result.crop
        save_transforms(
            result.transforms,
            args.save_transforms,
            metadata={
                "layers": [str(p) for p in paths],
                "mode": args.mode,
                "framing": args.framing,
                "crop": [crop.x, crop.y, crop.width, crop.height],
            },
        )

    if not args.quiet:
        print_header("Composite registration")
        for path, t in zip(paths, result.transforms):
            state = "ok" if t.success else "unregistered"
            print_info(f"{path.name}: matches={t.matched_stars} fallback={t.fallback_used.value} ({state})")
        print_metric("Output size", f"{result.width}x{result.height}")
    return 0


def cmd_annotations(args: argparse.Namespace) -> int:
    """Dispatch ``annotations`` subcommands."""
    bundle_path = Path(args.bundle)
    out_path = Path(args.out) if getattr(args, "out", None) else bundle_path

    if args.action == "detect":
        pixels, width, height = read_frame(args.frame)
        detection = resolve_detection_options(args.profile)
        stars = detect_stars(pixels, width, height, detection)
        previous = load_bundle(bundle_path).points if bundle_path.exists() else []
        points = merge_detected_with_manual(
            previous, stars, MergePolicy(max_detected_points=args.max_points)
        )
        bundle = StarAnnotationBundle(
            updated_at=now_ms(),
            detection_snapshot=detection,
            points=points,
            image_geometry=ImageGeometry(width, height),
        )
        save_bundle(bundle, out_path)
        print_success(f"{len(stars)} stars detected, {len(points)} annotation points saved")
        return 0

    if not bundle_path.exists():
        print_error(f"Bundle not found: {bundle_path}")
        return 1

    if args.action == "sanitize":
        with open(bundle_path) as f:
            raw = json.load(f)
        if not isinstance(raw, dict):
            print_error(f"{bundle_path}: expected a JSON object")
            return 1
        bundle = sanitize_star_annotations(
            raw, SanitizeOptions(image_width=args.width, image_height=args.height)
        )
        save_bundle(bundle, out_path)
        print_success(f"Sanitized bundle: {len(bundle.points)} points")
        return 0

    if args.action == "check":
        usability = evaluate_star_annotation_usability(
            load_bundle(bundle_path),
            UsabilityOptions(
                image_width=args.width,
                image_height=args.height,
                min_enabled_points=args.min_points,
            ),
        )
        print_metric("Enabled points", usability.enabled_points)
        if usability.usable:
            print_success("Annotations usable for registration")
            return 0
        print_warning(f"Annotations not usable: {usability.reason}")
        return 1

    if args.action == "edit":
        edit = parse_edit(args.edit)
        bundle = apply_edit_to_bundle(load_bundle(bundle_path), edit, args.width, args.height)
        save_bundle(bundle, out_path)
        if bundle.stale:
            print_warning(f"Edit '{edit.kind}' cannot be mapped, annotations marked stale")
        else:
            print_success(f"Mapped {len(bundle.points)} points through '{edit.kind}'")
        return 0

    return 1


# =============================================================================
# Parser
# =============================================================================


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI."""
    parser = argparse.ArgumentParser(
        prog="astroreg",
        description="Star-based registration and frame quality for astronomical frames",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"astroreg {get_version()}",
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    common.add_argument("-q", "--quiet", action="store_true", help="No progress bars or tables")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Score command
    score_parser = subparsers.add_parser("score", parents=[common], help="Score and select frames")
    score_parser.add_argument("frames", nargs="+", help="Frame files or directories")
    score_parser.add_argument(
        "--keep",
        type=float,
        default=0.92,
        help="Fraction of frames to keep (default: 0.92)",
    )
    score_parser.add_argument(
        "--min-score",
        type=float,
        default=None,
        help="Reject frames scoring below this value",
    )
    score_parser.add_argument(
        "--profile",
        choices=DETECTION_PROFILES,
        default=None,
        help="Detector profile (default: legacy, sigma 5)",
    )
    score_parser.add_argument("--json", type=str, default=None, help="Write scores to a JSON file")

    # Align command
    align_parser = subparsers.add_parser("align", parents=[common], help="Align frames onto a reference")
    align_parser.add_argument("reference", help="Reference frame")
    align_parser.add_argument("targets", nargs="+", help="Target frame files or directories")
    align_parser.add_argument(
        "--mode",
        choices=ALIGNMENT_MODES,
        default="full",
        help="Transform model (default: full)",
    )
    align_parser.add_argument(
        "--fallback",
        action="store_true",
        help="Retry with translation when full alignment fails",
    )
    align_parser.add_argument(
        "--search-radius",
        type=float,
        default=20.0,
        help="Translation matching radius in pixels (default: 20)",
    )
    align_parser.add_argument("--profile", choices=DETECTION_PROFILES, default=None)
    align_parser.add_argument(
        "--ref-annotations",
        type=str,
        default=None,
        help="Annotation bundle used as reference stars when usable",
    )
    align_parser.add_argument("--out", type=str, default=None, help="Directory for aligned frames")
    align_parser.add_argument("--overwrite", action="store_true")
    align_parser.add_argument("--save-transforms", type=str, default=None, help="Transforms JSON")

    # Composite command
    comp_parser = subparsers.add_parser("composite", parents=[common], help="Register composite layers")
    comp_parser.add_argument("layers", nargs="+", help="Layer files, the first is the reference")
    comp_parser.add_argument("--mode", choices=ALIGNMENT_MODES, default="full")
    comp_parser.add_argument(
        "--framing",
        choices=FRAMING_MODES,
        default="none",
        help="Crop policy after registration (default: none)",
    )
    comp_parser.add_argument("--out", type=str, default=None, help="Directory for framed layers")
    comp_parser.add_argument("--overwrite", action="store_true")
    comp_parser.add_argument("--save-transforms", type=str, default=None, help="Transforms JSON")

    # Annotations command
    ann_parser = subparsers.add_parser("annotations", help="Manage star annotation bundles")
    ann_sub = ann_parser.add_subparsers(dest="action", help="Annotation actions")

    detect_parser = ann_sub.add_parser("detect", parents=[common], help="Detect stars and merge")
    detect_parser.add_argument("bundle", help="Bundle JSON (created if missing)")
    detect_parser.add_argument("frame", help="Frame to detect stars in")
    detect_parser.add_argument("--profile", choices=DETECTION_PROFILES, default="balanced")
    detect_parser.add_argument("--max-points", type=int, default=50)
    detect_parser.add_argument("--out", type=str, default=None)

    sanitize_parser = ann_sub.add_parser("sanitize", parents=[common], help="Repair a bundle")
    sanitize_parser.add_argument("bundle", help="Bundle JSON (version 1 or 2)")
    sanitize_parser.add_argument("--width", type=int, default=None)
    sanitize_parser.add_argument("--height", type=int, default=None)
    sanitize_parser.add_argument("--out", type=str, default=None)

    check_parser = ann_sub.add_parser("check", parents=[common], help="Check bundle usability")
    check_parser.add_argument("bundle", help="Bundle JSON")
    check_parser.add_argument("--width", type=int, default=None)
    check_parser.add_argument("--height", type=int, default=None)
    check_parser.add_argument("--min-points", type=int, default=3)

    edit_parser = ann_sub.add_parser("edit", parents=[common], help="Map points through an image edit")
    edit_parser.add_argument("bundle", help="Bundle JSON")
    edit_parser.add_argument(
        "edit",
        help=f"One of {', '.join(SUPPORTED_EDITS)}; crop:x,y,w,h; rotate_arbitrary:degrees",
    )
    edit_parser.add_argument("--width", type=int, default=None, help="Pre-edit width")
    edit_parser.add_argument("--height", type=int, default=None, help="Pre-edit height")
    edit_parser.add_argument("--out", type=str, default=None)

    return parser


COMMANDS = {
    "score": cmd_score,
    "align": cmd_align,
    "composite": cmd_composite,
    "annotations": cmd_annotations,
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point for CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None or (args.command == "annotations" and args.action is None):
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    setup_terminal()
    logger.debug("%s | %s", get_version_banner(), get_platform_info())
    if not args.quiet:
        print_banner(get_version())

    try:
        return COMMANDS[args.command](args)
    except (OSError, ValueError) as e:
        print_error(f"{args.command} failed: {e}")
        logger.exception("%s failed: %s", args.command, e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
