from __future__ import annotations

import argparse
import asyncio
import os
import time
from pathlib import Path

from dotenv import load_dotenv
from tqdm import tqdm

from subject_cutout.contracts import FAST, QUALITY
from subject_cutout.errors import PipelineError
from subject_cutout.log import get_logger, setup_logging
from subject_cutout.model import ModelService, backend_from_spec, color_threshold_backend, default_backends
from subject_cutout.pipeline import PipelineOrchestrator, StaticDeviceCapability

logger = get_logger("run")


def _iter_images(input_dir: Path):
    exts = {".jpg", ".jpeg", ".png", ".webp", ".bmp", ".tif", ".tiff"}
    for p in sorted(input_dir.rglob("*")):
        if p.is_file() and p.suffix.lower() in exts:
            yield p


VARIANTS = {"auto": None, "quality": QUALITY, "fast": FAST}


async def _process_all(
    orchestrator: PipelineOrchestrator,
    images,
    input_dir: Path,
    output_dir: Path,
    keep_original: bool,
    variant: str = "auto",
):
    config = VARIANTS[variant]
    failures = 0
    for img_path in tqdm(images, desc="Processing", unit="img"):
        rel = img_path.relative_to(input_dir)
        out_path = (output_dir / rel).with_suffix(".png")
        out_path.parent.mkdir(parents=True, exist_ok=True)

        t0 = time.perf_counter()
        try:
            if keep_original:
                outcome = await orchestrator.remove_background_or_original(str(img_path), config)
                encoded, kept = outcome.encoded, outcome.kept_original
            else:
                encoded, kept = (await orchestrator.remove_background(str(img_path), config)).encoded, False
        except PipelineError as e:
            failures += 1
            logger.error("image_failed", image=str(rel), **e.to_dict())
            continue

        out_path.write_bytes(encoded)
        logger.info(
            "image_done",
            image=str(rel),
            kept_original=kept,
            duration_ms=int((time.perf_counter() - t0) * 1000),
        )
    return failures


def main() -> int:
    # SUBJECT_CUTOUT_MODEL / SUBJECT_CUTOUT_LOG_LEVEL may come from a local .env file.
    load_dotenv()

    parser = argparse.ArgumentParser(description="Subject cutout: alpha-matted RGBA PNGs from photos.")
    parser.add_argument("--input", required=True, type=str, help="Input directory containing images.")
    parser.add_argument("--output", required=True, type=str, help="Output directory for RGBA PNGs.")
    parser.add_argument(
        "--model",
        default=os.getenv("SUBJECT_CUTOUT_MODEL", "auto"),
        type=str,
        help="Model spec: 'auto' (fallback chain), 'hf:<repo>', 'birefnet', 'color' or a TorchScript path.",
    )
    parser.add_argument(
        "--variant",
        default="auto",
        choices=sorted(VARIANTS),
        help="Refinement variant; 'auto' picks from --low-power/--low-memory.",
    )
    parser.add_argument("--low-power", action="store_true", help="Use the Fast variant (832px budget).")
    parser.add_argument("--low-memory", action="store_true", help="Use the Fast variant (640px budget).")
    parser.add_argument("--color-fallback", action="store_true", help="Append the color-threshold backend to the chain.")
    parser.add_argument("--keep-original", action="store_true", help="Write the resized original when removal fails.")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines.")
    parser.add_argument("--log-level", default=os.getenv("SUBJECT_CUTOUT_LOG_LEVEL", "INFO"), type=str)
    args = parser.parse_args()

    setup_logging(args.log_level, json_format=args.json_logs)

    input_dir = Path(args.input)
    output_dir = Path(args.output)
    if not input_dir.exists():
        raise FileNotFoundError(f"Input dir not found: {input_dir}")

    images = list(_iter_images(input_dir))
    if not images:
        print(f"No images found under {input_dir}")
        return 0

    if args.model == "auto":
        backends = default_backends(color_fallback=args.color_fallback)
    else:
        backends = [backend_from_spec(args.model)]
        if args.color_fallback and args.model != "color":
            backends.append(color_threshold_backend())

    service = ModelService(backends)
    capability = StaticDeviceCapability(low_power=args.low_power, low_memory=args.low_memory)
    orchestrator = PipelineOrchestrator(service, capability=capability)

    total0 = time.perf_counter()
    try:
        failures = asyncio.run(
            _process_all(orchestrator, images, input_dir, output_dir, args.keep_original, args.variant)
        )
    finally:
        service.dispose()
    total1 = time.perf_counter()

    print(f"Done. {len(images)} images ({failures} failed) in {total1 - total0:.2f}s")
    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
