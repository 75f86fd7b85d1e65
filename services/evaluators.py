"""Expression evaluator port and its two implementations.

The renderer only depends on ``ExpressionEvaluator``: an object with an
``async evaluate(expression, context)`` returning an ``EvaluationResult``.

- ``DirectEvaluator`` resolves data paths in-process.
- ``SandboxedEvaluator`` runs a pure evaluation function in an executor
  (a process pool unless one is injected) under a timeout.
"""
from __future__ import annotations

import asyncio
import logging
import re
from concurrent.futures import Executor, ProcessPoolExecutor
from typing import Any, Callable, Dict, List, Protocol, Union

from models.schemas import EvaluationResult
from services.engine_config import get_engine_settings

logger = logging.getLogger(__name__)


PathSegment = Union[str, int]

_NAME_RE = re.compile(r"\s*([A-Za-z_$][A-Za-z0-9_$]*|\d+)\s*")
_INDEX_RE = re.compile(r"\[\s*(\d+)\s*\]\s*")


class ExpressionError(ValueError):
    """Raised for an expression the path evaluator cannot parse."""


class ExpressionEvaluator(Protocol):
    async def evaluate(self, expression: str, context: Dict[str, Any]) -> EvaluationResult:
        ...


# =============================================================================
# PATH EXPRESSIONS
# =============================================================================

def parse_path(expression: str) -> List[PathSegment]:
    """Split ``customer.orders[0].total`` into ``["customer", "orders", 0, "total"]``.

    Dotted numeric segments (``items.0.name``) are indices too.
    """
    text = expression.strip() if isinstance(expression, str) else ""
    if not text:
        raise ExpressionError("Empty expression")

    segments: List[PathSegment] = []
    pos = 0
    expect_name = True
    while pos < len(text):
        if expect_name:
            match = _NAME_RE.match(text, pos)
            if not match:
                raise ExpressionError(f"Unexpected '{text[pos]}' at position {pos} in '{expression}'")
            token = match.group(1)
            segments.append(int(token) if token.isdigit() else token)
            pos = match.end()
            expect_name = False
        elif text[pos] == ".":
            pos += 1
            expect_name = True
        elif text[pos] == "[":
            match = _INDEX_RE.match(text, pos)
            if not match:
                raise ExpressionError(f"Malformed index at position {pos} in '{expression}'")
            segments.append(int(match.group(1)))
            pos = match.end()
        else:
            raise ExpressionError(f"Unexpected '{text[pos]}' at position {pos} in '{expression}'")

    if expect_name:
        raise ExpressionError(f"Expression '{expression}' ends with '.'")
    return segments


def resolve_path(context: Any, segments: List[PathSegment]) -> Any:
    """Walk ``segments`` through dicts and lists. Missing values resolve to None."""
    current = context
    for segment in segments:
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(segment if isinstance(segment, str) else str(segment))
        elif isinstance(current, list) and isinstance(segment, int):
            current = current[segment] if segment < len(current) else None
        else:
            return None
    return current


def evaluate_path_expression(expression: str, context: Dict[str, Any]) -> Any:
    """Pure evaluation function; raises ``ExpressionError`` on malformed input."""
    return resolve_path(context, parse_path(expression))


# =============================================================================
# IMPLEMENTATIONS
# =============================================================================

class DirectEvaluator:
    """In-process path evaluator."""

    async def evaluate(self, expression: str, context: Dict[str, Any]) -> EvaluationResult:
        try:
            value = evaluate_path_expression(expression, context)
        except ExpressionError as e:
            return EvaluationResult(success=False, error=str(e))
        return EvaluationResult(success=True, value=value)


class SandboxedEvaluator:
    """Evaluator that isolates evaluation in an executor with a timeout.

    ``evaluate_fn`` must be picklable when the executor is a process pool.
    A call that times out is reported as a failure; the worker is not
    interrupted and its late result is dropped.
    """

    def __init__(
        self,
        evaluate_fn: Callable[[str, Dict[str, Any]], Any] = evaluate_path_expression,
        executor: Executor | None = None,
        timeout: float | None = None,
    ):
        self._evaluate_fn = evaluate_fn
        self._executor = executor
        self._owns_executor = executor is None
        self.timeout = timeout if timeout is not None else get_engine_settings().sandbox_timeout_seconds

    def _get_executor(self) -> Executor:
        if self._executor is None:
            self._executor = ProcessPoolExecutor(max_workers=1)
        return self._executor

    async def evaluate(self, expression: str, context: Dict[str, Any]) -> EvaluationResult:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._get_executor(), self._evaluate_fn, expression, context)
        try:
            value = await asyncio.wait_for(future, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[EVAL] Expression timed out after {self.timeout}s: {expression}")
            return EvaluationResult(success=False, error=f"Evaluation timed out after {self.timeout}s")
        except Exception as e:
            return EvaluationResult(success=False, error=str(e) or type(e).__name__)
        return EvaluationResult(success=True, value=value)

    def close(self) -> None:
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
