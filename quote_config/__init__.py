"""
quote_config -- single public entrypoint for kernel configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration
    files or environment variables directly.

Architecture position:
    Configuration -- YAML-driven policy.  This package sits above
    ``quote_kernel``; the kernel never imports from ``quote_config``.
    Callers pass ``config.policy`` into the services.

Failure modes:
    - ``FileNotFoundError`` -- the requested configuration file is missing.
    - ``ConfigurationError`` -- schema or value validation failures.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``QUOTE_CONFIG_TRACE`` log entry with the config id, version and
    checksum, tying every priced estimate and issued link to the exact
    policy in force.
"""

from __future__ import annotations

from pathlib import Path

from quote_config.loader import compute_checksum, load_yaml_file, parse_kernel_config
from quote_config.schema import KernelConfig
from quote_kernel.logging_config import get_logger

logger = get_logger("config")

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(config_path: Path | str | None = None) -> KernelConfig:
    """
    The ONLY public configuration entrypoint.

    Postconditions:
        - Returns a frozen ``KernelConfig`` whose checksum matches the
          loaded source.
        - A ``QUOTE_CONFIG_TRACE`` log entry has been emitted.

    Args:
        config_path: Override YAML file.  Defaults to
            quote_config/sets/default.yaml.
    """
    path = Path(config_path) if config_path is not None else _DEFAULT_CONFIG_PATH
    data = load_yaml_file(path)
    config = parse_kernel_config(data, source_path=str(path))

    logger.info(
        "QUOTE_CONFIG_TRACE",
        extra={
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
        },
    )
    return config


__all__ = [
    "KernelConfig",
    "compute_checksum",
    "get_active_config",
    "load_yaml_file",
    "parse_kernel_config",
]
