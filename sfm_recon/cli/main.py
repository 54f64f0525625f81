"""
Command-line interface for the SfM pipeline.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from sfm_recon.config import (
    BundlerOptions,
    RansacFundamentalOptions,
    RansacHomographyOptions,
    RansacPoseOptions,
    SiftOptions,
    SurfOptions,
)
from sfm_recon.errors import SfmError
from sfm_recon.io.image_io import load_images_from_dir
from sfm_recon.io.scene_io import save_bundle_npz
from sfm_recon.sfm_inc.incremental_sfm import Bundler
from sfm_recon.sfm_inc.selection import (
    HomographyPairSelector,
    LowestPairSelector,
    LowestViewSelector,
    NearestPosedViewSelector,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Incremental Structure-from-Motion from a directory of images"
    )
    parser.add_argument(
        "--images",
        type=str,
        required=True,
        help="Directory with the input images (processed in name order)",
    )
    parser.add_argument(
        "--focal",
        type=float,
        default=1.0,
        help="Focal length normalized by the larger image dimension (default: 1.0)",
    )
    parser.add_argument(
        "--features",
        type=str,
        default="sift",
        choices=["sift", "surf"],
        help="Feature extractor (default: sift)",
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default="output",
        help="Output directory for the scene file (default: output)",
    )
    parser.add_argument(
        "--max-images",
        type=int,
        default=None,
        help="Maximum number of images to use (default: all)",
    )
    parser.add_argument(
        "--max-image-pixels",
        type=int,
        default=6000000,
        help="Images are halved until they have at most this many pixels (default: 6000000)",
    )
    parser.add_argument(
        "--init-pair",
        type=str,
        default="homography",
        choices=["homography", "lowest"],
        help=(
            "Initial pair strategy: best-matched pair not explained by a homography, "
            "or the two lowest image indices (default: homography)"
        ),
    )
    parser.add_argument(
        "--next-view",
        type=str,
        default="nearest",
        choices=["nearest", "lowest"],
        help=(
            "Next view strategy: index closest to a posed view, "
            "or the lowest remaining index (default: nearest)"
        ),
    )
    parser.add_argument(
        "--ransac-iterations",
        type=int,
        default=1000,
        help="RANSAC iterations for pose estimation (default: 1000)",
    )
    parser.add_argument(
        "--adaptive-ransac",
        action="store_true",
        help="Stop RANSAC once the inlier ratio found so far needs no more iterations",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Worker threads for extraction and matching (default: CPU count)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed for the RANSAC sample generators",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Only print the final summary",
    )
    return parser


def options_from_args(args: argparse.Namespace) -> BundlerOptions:
    """Map parsed command-line arguments onto BundlerOptions."""
    verbose = not args.quiet
    ransac = dict(
        max_iterations=args.ransac_iterations,
        adaptive_iterations=args.adaptive_ransac,
        seed=args.seed,
    )
    return BundlerOptions(
        feature_type=args.features,
        sift_options=SiftOptions(verbose_output=verbose),
        surf_options=SurfOptions(verbose_output=verbose),
        fundamental_options=RansacFundamentalOptions(**ransac),
        pose_options=RansacPoseOptions(**ransac),
        homography_options=RansacHomographyOptions(**ransac),
        max_image_pixels=args.max_image_pixels,
        max_workers=args.workers,
        discard_descriptors=True,
        verbose_output=verbose,
    )


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point for SfM pipeline.

    Usage:
        sfm-recon --images path/to/images/ \\
                  --focal 1.2 \\
                  --output-dir out/
    """
    args = build_parser().parse_args(argv)
    options = options_from_args(args)

    # Create output directory
    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    # Step 1: Load images
    images, paths = load_images_from_dir(args.images, max_images=args.max_images)
    print(f"Loaded {len(images)} images from {args.images}")
    if len(images) < 2:
        print("Error: Need at least 2 images for SfM")
        return 1

    # Step 2: Run SfM
    print("Running incremental SfM...")
    bundler = Bundler(
        images,
        focal_lengths=args.focal,
        options=options,
        init_pair_selector=(
            HomographyPairSelector() if args.init_pair == "homography" else LowestPairSelector()
        ),
        next_view_selector=(
            NearestPosedViewSelector() if args.next_view == "nearest" else LowestViewSelector()
        ),
    )
    try:
        bundle = bundler.run()
    except SfmError as e:
        print(f"Error: SfM failed to reconstruct scene: {type(e).__name__}: {e}")
        return 1

    num_cams = bundle.num_valid_cameras
    num_pts = len(bundle.tracks)
    print(f"SfM reconstructed {num_cams} of {len(images)} cameras and {num_pts} 3D points")
    for view_id in bundler.skipped_views:
        print(f"  skipped {paths[view_id].name}")

    # Step 3: Save outputs
    scene_path = output_dir / "scene.npz"
    print(f"Saving scene to {scene_path}...")
    save_bundle_npz(str(scene_path), bundle, bundler.viewports)

    print("Pipeline completed successfully!")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
