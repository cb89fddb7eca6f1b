"""
Connector registry: a static map from type tag to connector class.

Connector modules register themselves at import time:

    @register_connector("postgres", "postgresql")
    class SQLConnector(BaseConnector): ...

and callers resolve them through ``create_connector(config)``.
"""

from typing import Any, Callable, Dict, List, Type, Union
import logging

from core.exceptions import ConfigurationError
from core.security import redact
from schemas.connector import ConnectionConfig

logger = logging.getLogger(__name__)

_REGISTRY: Dict[str, Type] = {}


def register_connector(*type_tags: str) -> Callable[[Type], Type]:
    """Class decorator adding a connector under one or more type tags."""

    def decorator(cls: Type) -> Type:
        for tag in type_tags:
            existing = _REGISTRY.get(tag)
            if existing is not None and existing is not cls:
                raise ConfigurationError(
                    f"Connector type '{tag}' already registered by {existing.__name__}",
                    context={"source_type": tag},
                )
            _REGISTRY[tag] = cls
        return cls

    return decorator


def supported_types() -> List[str]:
    return sorted(_REGISTRY)


def is_supported(type_tag: str) -> bool:
    return (type_tag or "").lower() in _REGISTRY


def create_connector(config: Union[ConnectionConfig, Dict[str, Any]], **options: Any):
    """
    Instantiate the connector registered for ``config.type``.

    Extra keyword options (e.g. ``transport`` for HTTP connectors) are passed
    to the connector constructor.

    Raises:
        ConfigurationError: Unknown connector type or malformed config
    """
    if isinstance(config, dict):
        try:
            config = ConnectionConfig(**config)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"Invalid connection config: {redact(str(e), [config.get('password'), config.get('auth_token')])}",
                context={"source_type": config.get("type")},
            ) from None

    connector_cls = _REGISTRY.get((config.type or "").lower())
    if connector_cls is None:
        raise ConfigurationError(
            f"Unsupported data source type: {config.type}",
            context={"source_type": config.type, "supported": supported_types()},
        )

    logger.debug(f"Creating {connector_cls.__name__} for {config.type}")
    return connector_cls(config, **options)
