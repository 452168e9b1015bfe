"""Condition evaluation against signal snapshots."""

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from simpleeval import NameNotDefined, simple_eval

from axremediation.core.errors import EvaluationError
from axremediation.engine.conditions import (
    OPERATORS,
    AllCondition,
    Condition,
    EqualsCondition,
    ExpressionCondition,
    FieldRef,
    MembershipCondition,
    SustainedCondition,
    ThresholdCondition,
)
from axremediation.models.signal import SignalSnapshot


@dataclass
class EvaluationResult:
    """Result of evaluating one rule condition."""

    matched: bool
    payload: dict[str, Any] = field(default_factory=dict)
    reason: str = ""
    error: str | None = None


@dataclass
class _LeafResult:
    matched: bool
    detail: dict[str, Any] = field(default_factory=dict)
    reason: str = ""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class ConditionEvaluator:
    """Pure evaluator for parsed trigger conditions."""

    # Allowed functions in free-form expressions
    ALLOWED_FUNCTIONS = {
        "abs": abs,
        "min": min,
        "max": max,
        "sum": sum,
        "len": len,
        "round": round,
        "int": int,
        "float": float,
        "str": str,
        "bool": bool,
    }

    def evaluate(
        self,
        condition: Condition,
        snapshot: SignalSnapshot,
        history: Iterable[SignalSnapshot] = (),
    ) -> EvaluationResult:
        """Evaluate a condition against the latest snapshot.

        Missing fields, absent signal sections and type mismatches fail closed.

        Args:
            condition: Parsed trigger condition
            snapshot: Latest signal snapshot
            history: Past snapshots, oldest first (for sustained conditions)

        Returns:
            Evaluation result with the captured trigger payload on match
        """
        samples = tuple(s for s in history if s.captured_at < snapshot.captured_at)
        try:
            leaf = self._evaluate(condition, snapshot, samples)
        except EvaluationError as e:
            return EvaluationResult(matched=False, reason=f"Evaluation error: {e}", error=str(e))

        if not leaf.matched:
            return EvaluationResult(matched=False, reason=leaf.reason)

        payload = {
            "captured_at": snapshot.captured_at.isoformat(),
            "matches": leaf.detail.get("matches", [leaf.detail]),
        }
        return EvaluationResult(matched=True, payload=payload, reason=leaf.reason)

    def _evaluate(
        self,
        condition: Condition,
        snapshot: SignalSnapshot,
        samples: tuple[SignalSnapshot, ...],
    ) -> _LeafResult:
        if isinstance(condition, AllCondition):
            return self._evaluate_all(condition, snapshot, samples)
        if isinstance(condition, ThresholdCondition):
            return self._evaluate_threshold(condition, snapshot)
        if isinstance(condition, SustainedCondition):
            return self._evaluate_sustained(condition, snapshot, samples)
        if isinstance(condition, EqualsCondition):
            return self._evaluate_strings(
                condition.field, snapshot, lambda v: v == condition.value, f"== {condition.value!r}"
            )
        if isinstance(condition, MembershipCondition):
            return self._evaluate_strings(
                condition.field, snapshot, lambda v: v in condition.values,
                f"in {sorted(condition.values)}",
            )
        if isinstance(condition, ExpressionCondition):
            return self._evaluate_expression(condition, snapshot)
        raise EvaluationError(f"Unsupported condition: {type(condition).__name__}")

    def _evaluate_all(
        self,
        condition: AllCondition,
        snapshot: SignalSnapshot,
        samples: tuple[SignalSnapshot, ...],
    ) -> _LeafResult:
        matches: list[dict[str, Any]] = []
        for child in condition.conditions:
            result = self._evaluate(child, snapshot, samples)
            if not result.matched:
                return result
            matches.extend(result.detail.get("matches", [result.detail]))
        return _LeafResult(
            matched=True,
            detail={"matches": matches},
            reason=f"All {len(condition.conditions)} conditions matched",
        )

    def _scalar(self, ref: FieldRef, snapshot: SignalSnapshot) -> float | None:
        section = getattr(snapshot, ref.source)
        if section is None:
            return None
        value = snapshot.scalar(ref.source, ref.name)
        if value is None:
            raise EvaluationError(f"Field {ref.path!r} not present in snapshot")
        if not _is_number(value):
            raise EvaluationError(f"Field {ref.path!r} is not numeric: {value!r}")
        return value

    def _evaluate_threshold(self, condition: ThresholdCondition, snapshot: SignalSnapshot) -> _LeafResult:
        ref = condition.field
        compare = OPERATORS[condition.op]
        expected = f"{ref.path} {condition.op} {condition.value:g}"

        if ref.is_collection:
            matched_items = []
            for item in snapshot.items(ref.source):
                value = getattr(item, ref.name)
                if not _is_number(value):
                    raise EvaluationError(f"Field {ref.path!r} is not numeric: {value!r}")
                if compare(value, condition.value):
                    matched_items.append(item.model_dump(mode="json"))
            if not matched_items:
                return _LeafResult(matched=False, reason=f"No {ref.source} entry with {expected}")
            return _LeafResult(
                matched=True,
                detail={
                    "source": ref.source,
                    "field": ref.path,
                    "operator": condition.op,
                    "threshold": condition.value,
                    "items": matched_items,
                },
                reason=f"{len(matched_items)} {ref.source} entries with {expected}",
            )

        value = self._scalar(ref, snapshot)
        if value is None:
            return _LeafResult(matched=False, reason=f"No {ref.source} signals in snapshot")
        if not compare(value, condition.value):
            return _LeafResult(matched=False, reason=f"{ref.path}={value:g}, expected {expected}")
        return _LeafResult(
            matched=True,
            detail={
                "source": ref.source,
                "field": ref.path,
                "operator": condition.op,
                "threshold": condition.value,
                "value": value,
            },
            reason=f"{ref.path}={value:g} {condition.op} {condition.value:g}",
        )

    def _evaluate_sustained(
        self,
        condition: SustainedCondition,
        snapshot: SignalSnapshot,
        samples: tuple[SignalSnapshot, ...],
    ) -> _LeafResult:
        ref = condition.field
        compare = OPERATORS[condition.op]
        expected = f"{ref.path} {condition.op} {condition.value:g}"

        current = self._scalar(ref, snapshot)
        if current is None:
            return _LeafResult(matched=False, reason=f"No {ref.source} signals in snapshot")
        if not compare(current, condition.value):
            return _LeafResult(matched=False, reason=f"{ref.path}={current:g}, expected {expected}")

        # Walk back while the condition keeps holding. Time is measured on the
        # readings themselves, so a reading that was never refreshed adds none.
        latest = snapshot.recorded_at(ref.source)
        since = latest
        for sample in reversed(samples):
            try:
                value = self._scalar(ref, sample)
            except EvaluationError:
                break
            if value is None or not compare(value, condition.value):
                break
            since = min(since, sample.recorded_at(ref.source))

        held = (latest - since).total_seconds()
        if held < condition.duration_seconds:
            return _LeafResult(
                matched=False,
                reason=f"{expected} held {held:.0f}s of {condition.duration_seconds:.0f}s",
            )
        return _LeafResult(
            matched=True,
            detail={
                "source": ref.source,
                "field": ref.path,
                "operator": condition.op,
                "threshold": condition.value,
                "value": current,
                "since": since.isoformat(),
                "sustained_seconds": held,
            },
            reason=f"{expected} sustained for {held:.0f}s",
        )

    def _evaluate_strings(
        self,
        ref: FieldRef,
        snapshot: SignalSnapshot,
        predicate: Callable[[str], bool],
        expected: str,
    ) -> _LeafResult:
        if ref.is_collection:
            matched_items = [
                item.model_dump(mode="json")
                for item in snapshot.items(ref.source)
                if predicate(str(getattr(item, ref.name)))
            ]
            if not matched_items:
                return _LeafResult(matched=False, reason=f"No {ref.source} entry with {ref.path} {expected}")
            return _LeafResult(
                matched=True,
                detail={"source": ref.source, "field": ref.path, "items": matched_items},
                reason=f"{len(matched_items)} {ref.source} entries with {ref.path} {expected}",
            )

        section = getattr(snapshot, ref.source)
        if section is None:
            return _LeafResult(matched=False, reason=f"No {ref.source} signals in snapshot")
        value = snapshot.scalar(ref.source, ref.name)
        if value is None:
            raise EvaluationError(f"Field {ref.path!r} not present in snapshot")
        if not predicate(str(value)):
            return _LeafResult(matched=False, reason=f"{ref.path}={value!r}, expected {expected}")
        return _LeafResult(
            matched=True,
            detail={"source": ref.source, "field": ref.path, "value": value},
            reason=f"{ref.path} {expected}",
        )

    def _evaluate_expression(self, condition: ExpressionCondition, snapshot: SignalSnapshot) -> _LeafResult:
        names = snapshot.flatten()
        try:
            result = simple_eval(
                condition.expression,
                names=names,
                functions=self.ALLOWED_FUNCTIONS,
            )
        except NameNotDefined as e:
            raise EvaluationError(f"Unknown name in expression {condition.expression!r}: {e}") from e
        except Exception as e:
            raise EvaluationError(f"Expression {condition.expression!r} failed: {e}") from e

        if not result:
            return _LeafResult(matched=False, reason=f"Expression '{condition.expression}' evaluated to false")
        return _LeafResult(
            matched=True,
            detail={"source": "expression", "expression": condition.expression},
            reason=f"Expression '{condition.expression}' evaluated to true",
        )


# Singleton instance
_evaluator: ConditionEvaluator | None = None


def get_condition_evaluator() -> ConditionEvaluator:
    """Get condition evaluator singleton."""
    global _evaluator
    if _evaluator is None:
        _evaluator = ConditionEvaluator()
    return _evaluator


def evaluate(
    condition: Condition,
    snapshot: SignalSnapshot,
    history: Iterable[SignalSnapshot] = (),
) -> EvaluationResult:
    """Evaluate a condition with the singleton evaluator."""
    return get_condition_evaluator().evaluate(condition, snapshot, history)
