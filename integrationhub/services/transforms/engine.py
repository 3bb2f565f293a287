from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Literal, Sequence

from pydantic import BaseModel, Field

from integrationhub.core.config import get_settings
from integrationhub.core.errors import TransformExecutionError, TransformValidationError


logger = logging.getLogger(__name__)

TransformFn = Callable[[Any, dict[str, Any]], Any]
# A required parameter may list alternative spellings (snake_case and camelCase).
RequiredParam = str | tuple[str, ...]

_INPUTLESS_TYPES = frozenset({"date_now"})


class Transform(BaseModel):
    type: str
    params: dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class TransformSpec:
    fn: TransformFn
    required_params: tuple[RequiredParam, ...] = ()


@dataclass(frozen=True)
class TransformStep:
    transform: str
    input: Any
    output: Any
    duration_ms: float


@dataclass(frozen=True)
class TransformResult:
    output: Any
    steps: list[TransformStep] = field(default_factory=list)
    total_duration_ms: float = 0.0


def _coerce(transforms: Iterable[Transform | dict[str, Any]]) -> list[Transform]:
    coerced: list[Transform] = []
    for index, item in enumerate(transforms):
        if isinstance(item, Transform):
            coerced.append(item)
            continue
        if not isinstance(item, dict) or not isinstance(item.get("type"), str):
            raise TransformValidationError(
                f"transform {index} must be an object with a string type",
                {"transform_index": index},
            )
        coerced.append(Transform(type=item["type"], params=item.get("params") or {}))
    return coerced


def _has_param(params: dict[str, Any], required: RequiredParam) -> bool:
    names = (required,) if isinstance(required, str) else required
    return any(name in params for name in names)


class TransformRegistry:
    """Maps transform type names to pure functions.

    Registration is expected at startup; call ``freeze()`` once wiring is done so
    request-time code only ever reads the map.
    """

    def __init__(self) -> None:
        self._specs: dict[str, TransformSpec] = {}
        self._frozen = False

    def register(
        self,
        transform_type: str,
        fn: TransformFn,
        required_params: Sequence[RequiredParam] = (),
    ) -> None:
        if self._frozen:
            raise RuntimeError(f"transform registry is frozen; cannot register {transform_type!r}")
        if transform_type in self._specs:
            logger.warning("transform_overwritten type=%s", transform_type)
        self._specs[transform_type] = TransformSpec(fn=fn, required_params=tuple(required_params))

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def types(self) -> list[str]:
        return list(self._specs)

    def copy(self) -> "TransformRegistry":
        clone = TransformRegistry()
        clone._specs = dict(self._specs)
        return clone

    def validate(self, transforms: Iterable[Transform | dict[str, Any]]) -> list[Transform]:
        # Reject unknown types and missing params before any step runs.
        coerced = _coerce(transforms)
        for index, transform in enumerate(coerced):
            spec = self._specs.get(transform.type)
            if spec is None:
                raise TransformValidationError(
                    f'unknown transform type "{transform.type}" at transform {index}',
                    {
                        "transform_index": index,
                        "transform_type": transform.type,
                        "available_types": self.types(),
                    },
                )
            for required in spec.required_params:
                if not _has_param(transform.params, required):
                    name = required if isinstance(required, str) else required[0]
                    raise TransformValidationError(
                        f'transform "{transform.type}" at transform {index} requires parameter: {name}',
                        {
                            "transform_index": index,
                            "transform_type": transform.type,
                            "missing_param": name,
                        },
                    )
        return coerced

    def execute(self, value: Any, transforms: Iterable[Transform | dict[str, Any]]) -> TransformResult:
        settings = get_settings()
        pipeline = self.validate(transforms)
        if value is None and not all(t.type in _INPUTLESS_TYPES for t in pipeline):
            raise TransformValidationError("transform input cannot be null")

        pipeline_start = time.perf_counter()
        current = value
        steps: list[TransformStep] = []
        for index, transform in enumerate(pipeline):
            spec = self._specs[transform.type]
            step_start = time.perf_counter()
            try:
                output = spec.fn(current, transform.params)
            except TransformValidationError as exc:
                exc.details.setdefault("transform_index", index)
                exc.details.setdefault("transform_type", transform.type)
                logger.error("transform_failed type=%s index=%s error=%s", transform.type, index, exc)
                raise
            except Exception as exc:  # noqa: BLE001 - any step failure aborts the pipeline
                logger.error("transform_failed type=%s index=%s error=%s", transform.type, index, exc)
                raise TransformExecutionError(
                    f'transform "{transform.type}" at transform {index} failed: {exc}',
                    index=index,
                    transform_type=transform.type,
                ) from exc
            duration_ms = round((time.perf_counter() - step_start) * 1000.0, 2)
            if duration_ms > settings.transform_step_warn_ms:
                logger.warning(
                    "transform_slow type=%s index=%s duration_ms=%.2f", transform.type, index, duration_ms
                )
            steps.append(TransformStep(transform=transform.type, input=current, output=output, duration_ms=duration_ms))
            current = output

        total_ms = round((time.perf_counter() - pipeline_start) * 1000.0, 2)
        if total_ms > settings.transform_total_warn_ms:
            logger.warning("transform_pipeline_slow steps=%s duration_ms=%.2f", len(pipeline), total_ms)
        return TransformResult(output=current, steps=steps, total_duration_ms=total_ms)


class FieldMapping(BaseModel):
    form_field: str
    connector_field: str
    transforms: list[Transform] = Field(default_factory=list)
    default_value: Any = None


def apply_mappings(
    source: dict[str, Any],
    mappings: Iterable[FieldMapping | dict[str, Any]],
    *,
    direction: Literal["push", "pull"] = "push",
    registry: TransformRegistry,
) -> dict[str, Any]:
    # Build the target payload field by field; push maps form fields onto connector fields.
    target: dict[str, Any] = {}
    for raw in mappings:
        mapping = raw if isinstance(raw, FieldMapping) else FieldMapping.model_validate(raw)
        source_field = mapping.form_field if direction == "push" else mapping.connector_field
        target_field = mapping.connector_field if direction == "push" else mapping.form_field
        value = source.get(source_field)
        if value is None:
            value = mapping.default_value
        if mapping.transforms and value is not None:
            value = registry.execute(value, mapping.transforms).output
        target[target_field] = value
    logger.debug("field_mappings_applied direction=%s fields=%s", direction, len(target))
    return target


def apply_field_transforms(
    data: dict[str, Any],
    transforms_by_field: dict[str, list[Transform | dict[str, Any]]],
    *,
    registry: TransformRegistry,
) -> dict[str, Any]:
    # Return a copy with the configured fields transformed; other fields pass through.
    result = dict(data)
    for field_name, transforms in transforms_by_field.items():
        value = result.get(field_name)
        pipeline = registry.validate(transforms)
        if value is None and not all(t.type in _INPUTLESS_TYPES for t in pipeline):
            continue
        result[field_name] = registry.execute(value, pipeline).output
    return result
