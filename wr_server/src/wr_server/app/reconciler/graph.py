from __future__ import annotations

"""
Explicit resource graph.

Stages are named nodes with declared dependencies and are applied in
topological order. Each stage receives the outputs of the stages applied
before it. Nodes marked concurrent that become ready at the same time run on
a thread pool; everything else runs on the calling thread. The first failure
stops the walk: no further stage is started.
"""

import contextvars
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from wr_server.app.errors import ReconcileError
from wr_server.app.logging_setup import log_context

logger = logging.getLogger("workspace_reconciler")

StageFn = Callable[[Dict[str, Any]], Any]


@dataclass
class Stage:
    name: str
    fn: StageFn
    depends_on: Tuple[str, ...] = ()
    concurrent: bool = False


@dataclass
class GraphResult:
    outputs: Dict[str, Any] = field(default_factory=dict)
    order: List[str] = field(default_factory=list)


class ResourceGraph:
    """
    A DAG of reconciliation stages.
    """

    def __init__(self, max_workers: int = 4) -> None:
        self._stages: Dict[str, Stage] = {}
        self._max_workers = max(1, int(max_workers))

    def add(
        self,
        name: str,
        fn: StageFn,
        depends_on: Sequence[str] = (),
        *,
        concurrent: bool = False,
    ) -> "ResourceGraph":
        if name in self._stages:
            raise ValueError(f"stage '{name}' is already defined")
        self._stages[name] = Stage(name=name, fn=fn, depends_on=tuple(depends_on), concurrent=concurrent)
        return self

    @property
    def stages(self) -> List[str]:
        return list(self._stages)

    def _sorter(self) -> TopologicalSorter:
        for stage in self._stages.values():
            unknown = [d for d in stage.depends_on if d not in self._stages]
            if unknown:
                raise ValueError(f"stage '{stage.name}' depends on unknown stage '{unknown[0]}'")
        ts: TopologicalSorter = TopologicalSorter()
        for stage in self._stages.values():
            ts.add(stage.name, *stage.depends_on)
        try:
            ts.prepare()
        except CycleError as exc:
            raise ValueError(f"stage dependency cycle: {' -> '.join(exc.args[1])}") from exc
        return ts

    def validate(self) -> None:
        self._sorter()

    def order(self) -> List[str]:
        ts = self._sorter()
        out: List[str] = []
        while ts.is_active():
            ready = sorted(ts.get_ready())
            out.extend(ready)
            ts.done(*ready)
        return out

    def _run(self, stage: Stage, outputs: Dict[str, Any]) -> Any:
        with log_context(stage=stage.name):
            logger.debug("Applying stage %s", stage.name)
            return self._call(stage, outputs)

    def _call(self, stage: Stage, outputs: Dict[str, Any]) -> Any:
        try:
            return stage.fn(outputs)
        except ReconcileError as exc:
            if exc.stage is None:
                exc.stage = stage.name
            raise
        except Exception as exc:
            raise ReconcileError(str(exc) or exc.__class__.__name__, stage=stage.name) from exc

    def apply(self, initial: Optional[Dict[str, Any]] = None) -> GraphResult:
        """
        Apply every stage in dependency order and return their outputs.
        """
        ts = self._sorter()
        result = GraphResult(outputs=dict(initial or {}))
        while ts.is_active():
            ready = sorted(ts.get_ready())
            parallel = [self._stages[n] for n in ready if self._stages[n].concurrent]
            serial = [self._stages[n] for n in ready if not self._stages[n].concurrent]

            for stage in serial:
                result.outputs[stage.name] = self._run(stage, result.outputs)
                result.order.append(stage.name)

            if len(parallel) == 1:
                stage = parallel[0]
                result.outputs[stage.name] = self._run(stage, result.outputs)
                result.order.append(stage.name)
            elif parallel:
                snapshot = dict(result.outputs)
                workers = min(self._max_workers, len(parallel))
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="wr-stage") as pool:
                    # Each worker gets its own copy of the caller's logging context
                    futures = [(s, pool.submit(contextvars.copy_context().run, self._run, s, snapshot)) for s in parallel]
                for stage, fut in futures:
                    result.outputs[stage.name] = fut.result()
                    result.order.append(stage.name)

            ts.done(*ready)
        return result


__all__ = ["Stage", "GraphResult", "ResourceGraph", "StageFn"]
