"""Data contract state: draft vs committed schema and data examples.

Edits land in a draft. Saving hands the draft to host-provided callbacks
(which may be sync or async) and, on success, marks it committed. A schema
save that would break existing examples is refused unless the caller forces
it.
"""
from __future__ import annotations

import copy
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from models.schemas import DataExample, MigrationDetectionResult, MigrationSuggestion, Template, ValidationErrorDetail
from services.schema_migration import detect_migrations

logger = logging.getLogger(__name__)


JsonSchema = Dict[str, Any]
Warnings = Dict[str, List[ValidationErrorDetail]]


@dataclass
class SaveResult:
    """Outcome of a save. ``warnings`` are keyed by data example id."""
    success: bool
    warnings: Warnings | None = None
    error: str | None = None
    migrations: List[MigrationSuggestion] = field(default_factory=list)
    example: DataExample | None = None


@dataclass
class SaveCallbacks:
    """Host persistence hooks. Any of them may return an awaitable.

    Save hooks return a ``SaveResult`` or a dict with the same keys.
    ``on_validate_schema`` returns a ``MigrationDetectionResult`` or a dict
    with ``compatible`` and ``migrations``.
    """
    on_save_schema: Optional[Callable[..., Any]] = None
    on_save_data_examples: Optional[Callable[..., Any]] = None
    on_update_data_example: Optional[Callable[..., Any]] = None
    on_delete_data_example: Optional[Callable[..., Any]] = None
    on_validate_schema: Optional[Callable[..., Any]] = None


async def _call(callback: Callable[..., Any], *args: Any) -> Any:
    result = callback(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def _as_save_result(value: Any) -> SaveResult:
    if isinstance(value, SaveResult):
        return value
    if isinstance(value, dict):
        example = value.get("example")
        if isinstance(example, dict):
            example = DataExample.model_validate(example)
        return SaveResult(
            success=bool(value.get("success")),
            warnings=value.get("warnings"),
            error=value.get("error"),
            example=example,
        )
    return SaveResult(success=bool(value))


def migrations_to_warnings(migrations: List[MigrationSuggestion]) -> Warnings:
    """Group migration suggestions into per-example ``{field, message}`` records."""
    warnings: Warnings = {}
    for m in migrations:
        if m.issue == "MISSING_REQUIRED":
            message = f"Required field is missing (expected {m.expected_type})"
        elif m.issue == "UNKNOWN_FIELD":
            message = "Field is not declared in the schema"
        else:
            message = f"Expected {m.expected_type}, got {type(m.current_value).__name__}"
        warnings.setdefault(m.example_id, []).append(ValidationErrorDetail(field=m.path, message=message))
    return warnings


class DataContractService:
    def __init__(
        self,
        schema: Optional[JsonSchema],
        examples: List[DataExample],
        callbacks: SaveCallbacks | None = None,
    ):
        self._committed_schema = copy.deepcopy(schema)
        self._draft_schema = copy.deepcopy(schema)
        self._committed_examples = [e.model_copy(deep=True) for e in examples]
        self._draft_examples = [e.model_copy(deep=True) for e in examples]
        self._callbacks = callbacks or SaveCallbacks()
        self._listeners: List[Callable[[], None]] = []

    @classmethod
    def from_template(cls, template: Template, callbacks: SaveCallbacks | None = None) -> "DataContractService":
        return cls(template.json_schema, template.data_examples, callbacks)

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def schema(self) -> Optional[JsonSchema]:
        return self._draft_schema

    @property
    def committed_schema(self) -> Optional[JsonSchema]:
        return self._committed_schema

    @property
    def data_examples(self) -> List[DataExample]:
        return self._draft_examples

    @property
    def is_schema_dirty(self) -> bool:
        return self._draft_schema != self._committed_schema

    @property
    def is_examples_dirty(self) -> bool:
        return self._draft_examples != self._committed_examples

    @property
    def is_dirty(self) -> bool:
        return self.is_schema_dirty or self.is_examples_dirty

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _fire_change(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.error(f"[CONTRACT] Change listener failed: {e}")

    # -------------------------------------------------------------------------
    # Draft edits
    # -------------------------------------------------------------------------

    def set_draft_schema(self, schema: Optional[JsonSchema]) -> None:
        self._draft_schema = copy.deepcopy(schema)
        self._fire_change()

    def set_draft_examples(self, examples: List[DataExample]) -> None:
        ids = [e.id for e in examples]
        if len(ids) != len(set(ids)):
            raise ValueError("Data example ids must be unique")
        self._draft_examples = [e.model_copy(deep=True) for e in examples]
        self._fire_change()

    def add_draft_example(self, example: DataExample) -> bool:
        if any(e.id == example.id for e in self._draft_examples):
            logger.debug(f"[CONTRACT] Duplicate data example id: {example.id}")
            return False
        self._draft_examples.append(example.model_copy(deep=True))
        self._fire_change()
        return True

    def update_draft_example(self, example_id: str, name: str | None = None, data: Dict[str, Any] | None = None) -> bool:
        for idx, example in enumerate(self._draft_examples):
            if example.id == example_id:
                updates: Dict[str, Any] = {}
                if name is not None:
                    updates["name"] = name
                if data is not None:
                    updates["data"] = copy.deepcopy(data)
                self._draft_examples[idx] = example.model_copy(update=updates)
                self._fire_change()
                return True
        return False

    def delete_draft_example(self, example_id: str) -> bool:
        remaining = [e for e in self._draft_examples if e.id != example_id]
        if len(remaining) == len(self._draft_examples):
            return False
        self._draft_examples = remaining
        self._fire_change()
        return True

    def discard_draft(self) -> None:
        self._draft_schema = copy.deepcopy(self._committed_schema)
        self._draft_examples = [e.model_copy(deep=True) for e in self._committed_examples]
        self._fire_change()

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate_examples(self, schema: Optional[JsonSchema] = None) -> Warnings:
        """Per-example issues of the draft examples against ``schema`` (draft by default)."""
        target = self._draft_schema if schema is None else schema
        return migrations_to_warnings(detect_migrations(target, self._draft_examples).migrations)

    async def check_compatibility(self) -> MigrationDetectionResult:
        """Compatibility of the draft schema with the draft examples.

        Uses the host's ``on_validate_schema`` when provided.
        """
        if self._callbacks.on_validate_schema is None:
            return detect_migrations(self._draft_schema, self._draft_examples)
        result = await _call(self._callbacks.on_validate_schema, self._draft_schema, self._draft_examples)
        if isinstance(result, MigrationDetectionResult):
            return result
        return MigrationDetectionResult.model_validate(result)

    # -------------------------------------------------------------------------
    # Saves
    # -------------------------------------------------------------------------

    async def save_schema(self, force_update: bool = False) -> SaveResult:
        """Save the draft schema.

        Refused with itemized warnings when existing examples would no longer
        conform, unless ``force_update`` is set.
        """
        try:
            compatibility = await self.check_compatibility()
        except Exception as e:
            logger.error(f"[CONTRACT] Schema validation failed: {e}")
            return SaveResult(success=False, error=str(e) or "Failed to validate schema")

        if not compatibility.compatible and not force_update:
            logger.info(f"[CONTRACT] Schema save refused: {len(compatibility.migrations)} incompatibilities")
            return SaveResult(
                success=False,
                warnings=migrations_to_warnings(compatibility.migrations),
                error="Schema change is incompatible with existing data examples",
                migrations=compatibility.migrations,
            )

        if self._callbacks.on_save_schema is None:
            self._mark_schema_committed()
            return SaveResult(success=True, migrations=compatibility.migrations)

        try:
            result = _as_save_result(await _call(self._callbacks.on_save_schema, self._draft_schema, force_update))
        except Exception as e:
            logger.error(f"[CONTRACT] on_save_schema failed: {e}")
            return SaveResult(success=False, error=str(e) or "Failed to save schema")

        if result.success:
            self._mark_schema_committed()
        result.migrations = compatibility.migrations
        return result

    async def save_examples(self, examples: List[DataExample] | None = None) -> SaveResult:
        to_save = [e.model_copy(deep=True) for e in (examples if examples is not None else self._draft_examples)]

        if self._callbacks.on_save_data_examples is None:
            self._draft_examples = to_save
            self._mark_examples_committed()
            return SaveResult(success=True)

        try:
            result = _as_save_result(await _call(self._callbacks.on_save_data_examples, to_save))
        except Exception as e:
            logger.error(f"[CONTRACT] on_save_data_examples failed: {e}")
            return SaveResult(success=False, error=str(e) or "Failed to save examples")

        if result.success:
            self._draft_examples = to_save
            self._mark_examples_committed()
        return result

    async def save_single_example(
        self,
        example_id: str,
        name: str | None = None,
        data: Dict[str, Any] | None = None,
        force_update: bool = False,
    ) -> SaveResult:
        """Save one example. Data that does not fit the committed schema is refused unless forced."""
        current = next((e for e in self._draft_examples if e.id == example_id), None)
        if current is None:
            return SaveResult(success=False, error=f"Data example not found: {example_id}")

        updates: Dict[str, Any] = {}
        if name is not None:
            updates["name"] = name
        if data is not None:
            updates["data"] = copy.deepcopy(data)
        candidate = current.model_copy(update=updates)

        detection = detect_migrations(self._committed_schema, [candidate])
        if not detection.compatible and not force_update:
            return SaveResult(
                success=False,
                warnings=migrations_to_warnings(detection.migrations),
                error="Data example does not match the schema",
                migrations=detection.migrations,
            )

        if self._callbacks.on_update_data_example is None:
            result = SaveResult(success=True, example=candidate)
        else:
            try:
                result = _as_save_result(
                    await _call(self._callbacks.on_update_data_example, example_id, updates, force_update)
                )
            except Exception as e:
                logger.error(f"[CONTRACT] on_update_data_example failed: {e}")
                return SaveResult(success=False, error=str(e) or "Failed to save example")
            if result.success and result.example is None:
                result.example = candidate

        if result.success:
            self._replace_example(result.example)
            self._mark_examples_committed()
        return result

    async def delete_single_example(self, example_id: str) -> SaveResult:
        if self._callbacks.on_delete_data_example is not None:
            try:
                result = _as_save_result(await _call(self._callbacks.on_delete_data_example, example_id))
            except Exception as e:
                logger.error(f"[CONTRACT] on_delete_data_example failed: {e}")
                return SaveResult(success=False, error=str(e) or "Failed to delete example")
            if not result.success:
                return result

        self._draft_examples = [e for e in self._draft_examples if e.id != example_id]
        self._committed_examples = [e for e in self._committed_examples if e.id != example_id]
        self._fire_change()
        return SaveResult(success=True)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _replace_example(self, example: DataExample) -> None:
        self._draft_examples = [example if e.id == example.id else e for e in self._draft_examples]

    def _mark_schema_committed(self) -> None:
        self._committed_schema = copy.deepcopy(self._draft_schema)
        self._fire_change()

    def _mark_examples_committed(self) -> None:
        self._committed_examples = [e.model_copy(deep=True) for e in self._draft_examples]
        self._fire_change()
