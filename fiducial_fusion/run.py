import argparse
import signal
import sys

from .batch_source import JsonlBatchSource
from .config import SlamConfig, load_config
from .engine import FiducialSlamEngine


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Build a fiducial map from recorded detections")
    ap.add_argument("--config", help="Path to JSON/YAML config")
    ap.add_argument("--input", required=True, help="JSON-lines file of detector batches")

    ap.add_argument("--node-name")
    ap.add_argument("--map-file")
    ap.add_argument("--map-frame")
    ap.add_argument("--weighting-scale", type=float)
    ap.add_argument("--area-weight", action="store_true")
    ap.add_argument("--flat", action="store_true")
    ap.add_argument("--read-only", action="store_true")
    ap.add_argument("--verbose", action="store_true")
    ap.add_argument("--anchor-policy", choices=["observer_origin", "landmark_origin"])
    ap.add_argument("--multi-error-threshold", type=float)
    ap.add_argument("--tick-rate", type=float)
    ap.add_argument("--pose-csv")
    ap.add_argument("--observations-csv")
    ap.add_argument("--log-path")

    return ap


def _apply_args(cfg: SlamConfig, args: argparse.Namespace) -> SlamConfig:
    cfg.apply_overrides(
        node_name=args.node_name,
        map_file=args.map_file,
        map_frame=args.map_frame,
        weighting_scale=args.weighting_scale,
        use_fiducial_area_as_weight=True if args.area_weight else None,
        fiducials_flat=True if args.flat else None,
        read_only_map=True if args.read_only else None,
        verbose_info=True if args.verbose else None,
        anchor_policy=args.anchor_policy,
        multi_error_threshold=args.multi_error_threshold,
        tick_rate_hz=args.tick_rate,
        pose_csv=args.pose_csv,
        observations_csv=args.observations_csv,
        log_path=args.log_path,
    )
    return cfg.validate()


def main(argv=None) -> int:
    ap = _build_parser()
    args = ap.parse_args(argv)

    cfg = load_config(args.config) if args.config else SlamConfig()
    cfg = _apply_args(cfg, args)

    engine = FiducialSlamEngine(cfg)

    def _handle_signal(_sig, _frame):
        engine.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _handle_signal)

    summary = engine.run(JsonlBatchSource(args.input))
    print(summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
