from __future__ import annotations

from typing import Any, Iterable, Sequence

from integrationhub.services.transforms.builtins import register_builtins
from integrationhub.services.transforms.engine import (
    FieldMapping,
    RequiredParam,
    Transform,
    TransformFn,
    TransformRegistry,
    TransformResult,
    TransformStep,
    apply_field_transforms,
    apply_mappings,
)


_default_registry = register_builtins(TransformRegistry())


def get_default_registry() -> TransformRegistry:
    return _default_registry


def register_transform(
    transform_type: str,
    fn: TransformFn,
    required_params: Sequence[RequiredParam] = (),
) -> None:
    _default_registry.register(transform_type, fn, required_params)


def transform_types() -> list[str]:
    return _default_registry.types()


def execute_transforms(value: Any, transforms: Iterable[Transform | dict[str, Any]]) -> TransformResult:
    return _default_registry.execute(value, transforms)


__all__ = [
    "FieldMapping",
    "Transform",
    "TransformRegistry",
    "TransformResult",
    "TransformStep",
    "apply_field_transforms",
    "apply_mappings",
    "execute_transforms",
    "get_default_registry",
    "register_transform",
    "transform_types",
]
