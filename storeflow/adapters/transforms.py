"""
Transform Registry.

TRANSFORM steps run pure functions registered here. A transform receives
the step's resolved config and returns the step output; it must not touch
anything outside its arguments.

Usage:
    @register_transform("upper", description="Uppercase a string")
    def upper(config: dict) -> dict:
        return {"value": str(config.get("value", "")).upper()}
"""

from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass
import logging

from storeflow.engine.context import compare_values
from storeflow.engine.expressions import get_path


logger = logging.getLogger(__name__)

# Config keys consumed by the engine rather than by transforms
_RESERVED_KEYS = ("operation", "output")


@dataclass
class Transform:
    """
    A registered transform.

    Attributes:
        name: Operation name used in TRANSFORM configs
        func: Callable taking the resolved config
        description: Human-readable description
    """
    name: str
    func: Callable[[Dict[str, Any]], Any]
    description: str = ""

    def __call__(self, config: Dict[str, Any]) -> Any:
        return self.func(config)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description}


class TransformRegistry:
    """Registry of named transforms."""

    def __init__(self):
        self._transforms: Dict[str, Transform] = {}

    def register(self, name: Optional[str] = None, description: str = "") -> Callable:
        """
        Decorator to register a function as a transform.

        Args:
            name: Operation name (defaults to function name)
            description: Description (defaults to docstring)
        """
        def decorator(func: Callable) -> Callable:
            transform_name = name or func.__name__
            self._transforms[transform_name] = Transform(
                name=transform_name,
                func=func,
                description=(description or func.__doc__ or "").strip(),
            )
            logger.debug(f"Registered transform: {transform_name}")
            return func

        return decorator

    def get(self, name: str) -> Optional[Transform]:
        return self._transforms.get(name)

    def call(self, name: str, config: Dict[str, Any]) -> Any:
        """
        Run a transform by name.

        Raises:
            KeyError: If the transform is not registered
        """
        transform = self.get(name)
        if not transform:
            raise KeyError(f"Transform '{name}' not found in registry")
        return transform(config)

    def list_transforms(self) -> List[Dict[str, Any]]:
        return [t.to_dict() for t in self._transforms.values()]

    def __contains__(self, name: str) -> bool:
        return name in self._transforms

    def __len__(self) -> int:
        return len(self._transforms)


# Global transform registry instance
transform_registry = TransformRegistry()


def register_transform(name: Optional[str] = None, description: str = "") -> Callable:
    """Register a transform in the global registry."""
    return transform_registry.register(name, description)


# ============================================================
# Built-in transforms
# ============================================================

@register_transform("set", description="Output the resolved config as-is")
def set_values(config: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in config.items() if k not in _RESERVED_KEYS}


@register_transform("lookup", description="Read a dotted path from a value")
def lookup(config: Dict[str, Any]) -> Any:
    value = get_path(config.get("source"), config.get("path", ""))
    return config.get("default") if value is None else value


@register_transform("pick", description="Keep only the listed fields of an object")
def pick(config: Dict[str, Any]) -> Dict[str, Any]:
    source = config.get("source") or {}
    if not isinstance(source, dict):
        raise TypeError("pick requires an object 'source'")
    return {field: source.get(field) for field in config.get("fields", [])}


@register_transform("template", description="Render a text template")
def template(config: Dict[str, Any]) -> Dict[str, Any]:
    # Placeholders were substituted when the config was resolved
    return {"text": config.get("template", "")}


def _items(config: Dict[str, Any]) -> List[Any]:
    items = config.get("items")
    if items is None:
        return []
    if not isinstance(items, list):
        raise TypeError("'items' must be a list")
    return items


@register_transform("filter", description="Keep list items whose field matches")
def filter_items(config: Dict[str, Any]) -> List[Any]:
    field = config.get("field")
    operator = config.get("operator", "eq")
    expected = config.get("value")
    return [
        item for item in _items(config)
        if compare_values(operator, get_path(item, field) if field else item, expected)
    ]


@register_transform("count", description="Number of list items")
def count(config: Dict[str, Any]) -> int:
    return len(_items(config))


@register_transform("sum", description="Sum list items (or one numeric field of each)")
def sum_items(config: Dict[str, Any]) -> float:
    field = config.get("field")
    total = 0
    for item in _items(config):
        value = get_path(item, field) if field else item
        if value is None:
            continue
        total += float(value) if isinstance(value, str) else value
    return total
