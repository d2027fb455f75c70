"""Canonical per-node step records merged from poll snapshots and push deltas."""

import dataclasses
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from .models import DEFAULT_PREVIEW_LENGTH, DebugInfo, ExecutionStep, StepSource, StepStatus


class ExecutionStepRegistry:
    """
    Holds at most one :class:`ExecutionStep` per node id for one run.

    Merge rules applied by :meth:`upsert`:

    * explicit (non-``None``) fields of a push delta overwrite stored fields;
    * fields absent from an observation keep their stored value;
    * status only moves forward through pending, running, completed, failed,
      whatever the source. A poll snapshot that would move it backwards is
      stale and may only fill fields that are still empty.

    The registry performs no I/O and holds no timers. Merged records are built
    completely before being stored, so readers never see a half-merged step.
    """

    def __init__(self, preview_length: int = DEFAULT_PREVIEW_LENGTH):
        self.preview_length = preview_length
        self._steps: Dict[str, ExecutionStep] = {}
        self._last_active: Optional[str] = None

        self.stats = {
            "upserts": 0,
            "created": 0,
            "stale_polls": 0,
            "status_regressions_blocked": 0,
        }

    def __len__(self) -> int:
        return len(self._steps)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._steps

    def get(self, node_id: str) -> Optional[ExecutionStep]:
        return self._steps.get(node_id)

    def steps(self) -> List[ExecutionStep]:
        """All records in first-seen order."""
        return list(self._steps.values())

    def as_dict(self) -> Dict[str, ExecutionStep]:
        return dict(self._steps)

    def clear(self) -> None:
        self._steps.clear()
        self._last_active = None

    def upsert(self, step: ExecutionStep, source: StepSource = StepSource.PUSH) -> ExecutionStep:
        """Merge ``step`` into the stored record for ``step.node_id``."""
        self.stats["upserts"] += 1
        stored = self._steps.get(step.node_id)

        if stored is None:
            merged = self._with_debug_info(step, previous_output=None)
            self._steps[step.node_id] = merged
            self._last_active = step.node_id
            self.stats["created"] += 1
            return merged

        incoming = step.explicit_fields()
        updates: Dict[str, Any] = {}

        if self._regresses(stored.status, step.status):
            if source == StepSource.POLL:
                # Stale snapshot: only fill gaps.
                self.stats["stale_polls"] += 1
                logger.debug(
                    f"Stale poll for {step.node_id}: {step.status.value} < {stored.status.value}"
                )
                updates = {
                    name: value
                    for name, value in incoming.items()
                    if getattr(stored, name) is None
                }
            else:
                self.stats["status_regressions_blocked"] += 1
                updates = {name: value for name, value in incoming.items() if name != "status"}
        else:
            updates = incoming

        if "output" in updates:
            updates.pop("debug_info", None)
        if not updates:
            return stored

        merged = dataclasses.replace(stored, **updates)
        merged = self._with_debug_info(merged, previous_output=stored.output)
        if merged != stored:
            self._steps[step.node_id] = merged
        if merged.status == StepStatus.RUNNING and stored.status != StepStatus.RUNNING:
            self._last_active = step.node_id
        return self._steps[step.node_id]

    def upsert_many(self, steps: Iterable[ExecutionStep], source: StepSource = StepSource.POLL) -> None:
        for step in steps:
            self.upsert(step, source=source)

    def seed(self, nodes: Iterable[Any]) -> None:
        """Create pending records for ordered nodes that have none yet."""
        for node in nodes:
            if node.id in self._steps:
                continue
            self._steps[node.id] = ExecutionStep.pending(
                node.id, node_type=node.node_type, node_label=node.label
            )

    def append_text(self, text: str) -> Optional[ExecutionStep]:
        """Append a streamed text fragment to the most recently created or started step.

        Text accumulates under ``output["text"]``. A string output is extended
        in place and any other existing output is kept under ``"value"``.
        """
        if not text or self._last_active is None:
            return None
        stored = self._steps[self._last_active]
        if isinstance(stored.output, str):
            output: Any = stored.output + text
        else:
            if isinstance(stored.output, dict):
                output = dict(stored.output)
            elif stored.output is None:
                output = {}
            else:
                output = {"value": stored.output}
            output["text"] = output.get("text", "") + text
        return self.upsert(ExecutionStep(node_id=stored.node_id, output=output))

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "steps": len(self._steps)}

    @staticmethod
    def _regresses(current: Optional[StepStatus], incoming: Optional[StepStatus]) -> bool:
        if current is None or incoming is None:
            return False
        return incoming.rank < current.rank

    def _with_debug_info(self, step: ExecutionStep, previous_output: Any) -> ExecutionStep:
        if step.output is None or (step.debug_info is not None and step.output == previous_output):
            return step
        return dataclasses.replace(
            step, debug_info=DebugInfo.from_output(step.output, self.preview_length)
        )
