# src/fenestra/plugins/config_base.py
"""Base class for typed plugin options.

Example usage:
    class ForEachOptions(PluginConfig):
        items: str
        max_parallel: int = 4

    cfg = ForEachOptions.from_dict(options)
"""

from typing import Any, Self

from pydantic import BaseModel, ValidationError


class PluginConfigError(Exception):
    """Raised when plugin configuration is invalid."""

    pass


class PluginConfig(BaseModel):
    """Base class for typed plugin configurations.

    All plugin option models should inherit from this class.
    """

    model_config = {"extra": "forbid", "frozen": True}  # Reject unknown fields

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> Self:
        """Create config from dict with clear error on validation failure.

        Raises:
            PluginConfigError: If configuration is invalid.
        """
        if not isinstance(config, dict):
            raise PluginConfigError(f"Invalid configuration for {cls.__name__}: config must be a dict, got {type(config).__name__}.")
        try:
            return cls.model_validate(config)
        except ValidationError as e:
            raise PluginConfigError(f"Invalid configuration for {cls.__name__}: {e}") from e
        except ValueError as e:
            raise PluginConfigError(f"Invalid configuration for {cls.__name__}: {e}") from e
