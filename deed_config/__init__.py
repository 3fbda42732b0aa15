"""
deed_config -- single public entrypoint for workflow configuration.

Responsibility:
    Provides the runtime workflow configuration through
    ``get_active_config()``: pipelines, required fields and per-role field
    allowlists keyed by ``(form_type, role)``.  Services receive the
    returned ``WorkflowConfig`` by injection and never read YAML themselves.

Architecture position:
    Configuration -- YAML-driven, validated at load time.  Imports the
    closed enumerations from ``deed_kernel.domain``; kernel services take
    the parsed config as a constructor argument.

Failure modes:
    - ``FileNotFoundError`` -- the configuration file does not exist.
    - ``ValueError`` -- structural validation failures.

Audit relevance:
    Every load emits a ``DEED_CONFIG_TRACE`` log entry with the source path,
    version and checksum, tying workflow behaviour to an exact config file.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from deed_config.loader import load_config
from deed_config.schema import ALL_FIELDS, FormTypeDef, PipelineDef, WorkflowConfig

_logger = logging.getLogger("deed_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "data" / "form_types.yaml"

_cache: dict[Path, WorkflowConfig] = {}
_cache_lock = threading.Lock()


def get_active_config(config_path: Path | None = None) -> WorkflowConfig:
    """Load (once per path) and return the validated workflow configuration.

    Args:
        config_path: Override path to the YAML file.  Defaults to the
            packaged ``deed_config/data/form_types.yaml``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If configuration validation fails.
    """
    path = Path(config_path or DEFAULT_CONFIG_PATH).resolve()
    with _cache_lock:
        config = _cache.get(path)
        if config is not None:
            return config
        config = load_config(path)
        _cache[path] = config

    _logger.info(
        "DEED_CONFIG_TRACE",
        extra={
            "trace_type": "DEED_CONFIG_TRACE",
            "config_source": config.source,
            "config_version": config.version,
            "checksum": config.checksum,
            "pipeline_count": len(config.pipelines),
            "form_type_count": len(config.form_types),
        },
    )
    return config


def clear_config_cache() -> None:
    """Forget every loaded configuration. FOR TESTING ONLY."""
    with _cache_lock:
        _cache.clear()


__all__ = [
    "ALL_FIELDS",
    "DEFAULT_CONFIG_PATH",
    "FormTypeDef",
    "PipelineDef",
    "WorkflowConfig",
    "clear_config_cache",
    "get_active_config",
    "load_config",
]
