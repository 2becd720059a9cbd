"""Loading PipelineConfig from YAML.

The file is either a PipelineConfig document or a larger manifest holding
it under a top-level ``pipeline:`` key:

.. code-block:: yaml

    pipeline:
      application: orders-api
      environments:
        - {name: dev, promotion_order: 10}
        - {name: qa, promotion_order: 20}
        - {name: prod, promotion_order: 30, requires_approval: true}
      retry:
        max_attempts: 3
        initial_delay_ms: 1000
      stage_retry:
        deploy: {max_attempts: 2}
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from ratchet_core.pipeline.errors import ConfigurationError
from ratchet_core.schemas.config import PipelineConfig

logger = structlog.get_logger(__name__)

PIPELINE_SECTION = "pipeline"


def parse_pipeline_config(data: Any, *, source: str | None = None) -> PipelineConfig:
    """Validate already-parsed YAML/JSON data into a PipelineConfig.

    Args:
        data: Parsed document.
        source: Where the data came from, for error messages.

    Raises:
        ConfigurationError: If the data is not a mapping or fails validation.
    """
    if data is None:
        raise ConfigurationError("document is empty", path=source)
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"expected a mapping, got {type(data).__name__}", path=source
        )
    section = data.get(PIPELINE_SECTION, data)
    try:
        return PipelineConfig.model_validate(section)
    except ValidationError as e:
        raise ConfigurationError(str(e), path=source) from e


def load_pipeline_config(path: str | Path) -> PipelineConfig:
    """Load a PipelineConfig from a YAML file.

    Args:
        path: Path to the YAML file.

    Returns:
        Validated configuration.

    Raises:
        ConfigurationError: If the file is missing, unreadable, not valid
            YAML or not a valid configuration.

    Example:
        >>> config = load_pipeline_config("pipeline.yaml")
        >>> config.application
        'orders-api'
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError("file not found", path=str(config_path))

    try:
        with config_path.open() as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"failed to parse YAML: {e}", path=str(config_path)) from e
    except OSError as e:
        raise ConfigurationError(f"failed to read file: {e}", path=str(config_path)) from e

    config = parse_pipeline_config(data, source=str(config_path))
    logger.info(
        "pipeline_config_loaded",
        path=str(config_path),
        application=config.application,
        environments=[env.name for env in config.promotion_path],
    )
    return config


__all__ = ["PIPELINE_SECTION", "load_pipeline_config", "parse_pipeline_config"]
