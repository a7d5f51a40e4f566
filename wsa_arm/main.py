import argparse
import os
from pathlib import Path

from wsa_arm.config.settings import PipelineConfig
from wsa_arm.domain.models import (
    SOURCE_DESCRIPTIONS,
    InstallJob,
    PayloadSource,
    ShrinkPolicy,
    TranslationLayer,
)
from wsa_arm.logging import LoggerFactory, setup_logging
from wsa_arm.pipeline import InstallPipeline
from wsa_arm.storage.exceptions import InstallError, PreflightError, StorageError


DEFAULT_PAYLOAD_ROOT = Path(os.environ.get("WSA_ARM_PAYLOAD_ROOT", Path.cwd()))


def _sources_epilog() -> str:
    lines = []
    for layer in TranslationLayer:
        lines.append(f"Sources for {layer.value}:")
        for name in layer.valid_sources:
            lines.append(f"  {name:<24} {SOURCE_DESCRIPTIONS[name]}")
        lines.append("")
    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wsa-arm",
        description="Install an ARM translation layer into WSA system/vendor images",
        epilog=_sources_epilog(),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--type",
        dest="layer",
        required=True,
        choices=[layer.value for layer in TranslationLayer],
        help="Translation layer to install",
    )
    parser.add_argument("--source", required=True, help="Payload source variant")
    parser.add_argument(
        "--dir",
        dest="directory",
        required=True,
        type=Path,
        help="Directory containing system.vhdx and vendor.vhdx",
    )
    parser.add_argument(
        "--archive", help="Create <dir>/<ARCHIVE>.7z from the processed images"
    )
    parser.add_argument(
        "--payload-root",
        type=Path,
        default=DEFAULT_PAYLOAD_ROOT,
        help="Directory holding <type>/<source> payload trees (default: current directory)",
    )
    parser.add_argument(
        "--vendor-shrink-policy",
        choices=[policy.value for policy in ShrinkPolicy],
        help="How to size the vendor image when finalizing (default from settings)",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log raw command output")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()

    try:
        source = PayloadSource.parse(args.layer, args.source)
        job = InstallJob(
            source=source,
            directory=args.directory.resolve(),
            payload_root=args.payload_root.resolve(),
            archive_name=args.archive,
        )
        config = PipelineConfig.from_settings(
            vendor_shrink_policy=args.vendor_shrink_policy
        )
        InstallPipeline(job, config).run()
    except PreflightError as error:
        log.error(f"Error: {error}")
        return 1
    except (StorageError, InstallError) as error:
        log.error(f"Installation failed: {error}")
        return 1
    except KeyboardInterrupt:
        log.warning("Interrupted; images may need a manual e2fsck before reuse")
        return 130
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
