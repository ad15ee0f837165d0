"""Resolution pipeline: target -> master node -> iterative dependency expansion.

Order of states::

    TargetIdentify -> MasterMaterialize -> loop {
        pop node, ExtractDynamicParts, BindKnownInputs, ProvenanceSearch,
        TerminationCheck
    }

The two setup states cost one step each and every loop iteration costs
three. When the budget can't fit another iteration the run stops with a
partial graph and status ``aborted: budget``.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Mapping, Optional

from .corpus import CorpusIndex
from .errors import NodeNotFound, NoTargetFound, OracleError
from .models import NodeKind, RequestPayload, RunResult, RunState, RunStatus, unquote_curl
from .oracle import NONE_ANSWER, Oracle
from .provenance import ProvenanceSearch, is_script_url
from .storage import GraphStore

logger = logging.getLogger(__name__)

SETUP_STEPS = 2
STEPS_PER_ITERATION = 3
# Oracle answers this short are treated as noise, not URLs
MIN_TARGET_URL_CHARS = 6

IterationHook = Callable[[RunState, GraphStore], None]


class CancelToken:
    """Cooperative cancellation: an explicit flag plus an optional deadline."""

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self.deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline


def _dedupe(values: List[str]) -> List[str]:
    return list(dict.fromkeys(values))


class ResolutionPipeline:
    """Builds the dependency graph for one goal over a shared corpus.

    The corpus and oracle are shared; every :meth:`run` gets its own
    :class:`RunState` and :class:`GraphStore`, so independent runs can
    execute concurrently.
    """

    def __init__(
        self,
        corpus: CorpusIndex,
        oracle: Oracle,
        max_steps: Optional[int] = None,
        url_chunk_size: Optional[int] = None,
        on_iteration: Optional[IterationHook] = None,
    ):
        if max_steps is None or url_chunk_size is None:
            from . import config

            max_steps = config.MAX_STEPS if max_steps is None else max_steps
            url_chunk_size = config.URL_CHUNK_SIZE if url_chunk_size is None else url_chunk_size
        if url_chunk_size < 1:
            raise ValueError("url_chunk_size must be at least 1")
        self.corpus = corpus
        self.oracle = oracle
        self.max_steps = max_steps
        self.url_chunk_size = url_chunk_size
        self.on_iteration = on_iteration

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(
        self,
        goal: str,
        input_variables: Optional[Mapping[str, str]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> RunResult:
        """Resolve the dependencies of the request behind ``goal``.

        Raises:
            NoTargetFound: no captured endpoint could be matched to ``goal``.
        """
        graph = GraphStore()
        state = RunState(input_variables=dict(input_variables or {}))

        if self.max_steps < SETUP_STEPS:
            logger.info("Step budget of %d cannot cover target and master setup", self.max_steps)
            return self._result(graph, state, RunStatus.ABORTED, "budget")
        if self.identify_target(goal, state, cancel) is None:
            return self._result(graph, state, RunStatus.ABORTED, "cancelled")
        self.materialize_master(state, graph)
        state.steps_used = SETUP_STEPS

        return self._loop(graph, state, cancel)

    def _loop(self, graph: GraphStore, state: RunState, cancel: Optional[CancelToken]) -> RunResult:
        search = ProvenanceSearch(self.corpus, graph, self.oracle)

        while True:
            if cancel is not None and cancel.cancelled:
                logger.info("Run cancelled after %d iterations", state.iterations)
                return self._result(graph, state, RunStatus.ABORTED, "cancelled")
            if state.steps_used + STEPS_PER_ITERATION > self.max_steps:
                logger.info(
                    "Step budget of %d exhausted with %d node(s) still queued",
                    self.max_steps, len(state.work_queue),
                )
                return self._result(graph, state, RunStatus.ABORTED, "budget")

            iteration = state.iterations + 1
            try:
                logger.debug("Iteration %d (step %d/%d): extract dynamic parts",
                             iteration, state.steps_used + 1, self.max_steps)
                self.extract_dynamic_parts(state, graph)
                logger.debug("Iteration %d (step %d/%d): bind known inputs",
                             iteration, state.steps_used + 2, self.max_steps)
                self.bind_known_inputs(state, graph)
                logger.debug("Iteration %d (step %d/%d): provenance search",
                             iteration, state.steps_used + 3, self.max_steps)
                search.resolve(state.current_node, state.current_dynamic_parts, state)
            except NodeNotFound:
                raise
            except OracleError as exc:
                logger.warning("Oracle failure in iteration %d, returning partial graph: %s", iteration, exc)
                return self._result(graph, state, RunStatus.ABORTED, f"error: {exc}")
            except Exception as exc:
                logger.exception("Iteration %d failed, returning partial graph", iteration)
                return self._result(graph, state, RunStatus.ABORTED, f"error: {exc}")

            state.steps_used += STEPS_PER_ITERATION
            state.iterations = iteration

            if self.check_termination(state, graph):
                logger.info("Dependency graph complete after %d iterations", iteration)
                return self._result(graph, state, RunStatus.COMPLETED)
            if self.on_iteration is not None:
                self.on_iteration(state, graph)

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    def identify_target(self, goal: str, state: RunState, cancel: Optional[CancelToken] = None) -> Optional[str]:
        """Ask the oracle which endpoint performs ``goal``, one chunk at a time.

        Returns the resolved corpus key, or ``None`` when cancelled.
        """
        endpoints = self.corpus.endpoints
        if not endpoints:
            raise NoTargetFound(
                "No API endpoints left in the traffic after filtering; "
                "record more actions in the browser and try again."
            )

        chunks = [endpoints[i:i + self.url_chunk_size] for i in range(0, len(endpoints), self.url_chunk_size)]
        best: Optional[str] = None
        for index, chunk in enumerate(chunks, 1):
            if cancel is not None and cancel.cancelled:
                return None
            logger.debug("Target chunk %d/%d (%d endpoints)", index, len(chunks), len(chunk))
            try:
                candidate = (self.oracle.identify_target(goal, chunk) or "").strip()
            except OracleError as exc:
                logger.warning("Target lookup failed for chunk %d/%d: %s", index, len(chunks), exc)
                continue
            if candidate.upper() != NONE_ANSWER and len(candidate) >= MIN_TARGET_URL_CHARS:
                best = candidate
                break

        if best is None:
            raise NoTargetFound(f"No captured endpoint matched the goal {goal!r}.")
        key = self.corpus.resolve_url_key(best)
        if key is None:
            available = "\n  ".join(f"{ep.method} {ep.url}" for ep in endpoints)
            raise NoTargetFound(f"Oracle picked {best!r}, which is not in the traffic. Available:\n  {available}")

        state.target_url = key
        logger.info("Target endpoint: %s", key)
        return key

    def materialize_master(self, state: RunState, graph: GraphStore) -> str:
        entry = self.corpus.lookup_by_url(state.target_url)
        if entry is None:
            raise NoTargetFound(f"Target {state.target_url!r} is not in the traffic.")
        key = entry.request.to_curl()
        master = state.request_to_node.get(key)
        if master is None:
            master = graph.add_node(NodeKind.MASTER, RequestPayload(entry.request, entry.response))
            state.request_to_node[key] = master
        state.master_node = master
        state.push(master)
        return master

    def extract_dynamic_parts(self, state: RunState, graph: GraphStore) -> List[str]:
        """Pop the next node and record the dynamic parts of its request."""
        node_id = state.pop()
        state.current_node = node_id
        node = graph.require_node(node_id)
        request = node.request
        if request is None:
            raise TypeError(f"Queued node {node_id} is a {node.kind.value} node, not a request")

        if is_script_url(request.url):
            graph.update_node(node_id, dynamic_parts=[])
            state.current_dynamic_parts = []
            return []

        curl = request.to_minified_curl()
        literal = unquote_curl(curl)
        parts = _dedupe(self.oracle.identify_dynamic_parts(curl))

        # Caller inputs that literally appear are given, not dependencies
        present = {name: value for name, value in state.input_variables.items() if value and value in literal}
        if present:
            given = set(present.values())
            parts = [p for p in parts if p not in given]
            merged = dict(node.input_variables)
            merged.update(present)
            graph.update_node(node_id, dynamic_parts=parts, input_variables=merged)
        else:
            graph.update_node(node_id, dynamic_parts=parts)

        state.current_dynamic_parts = list(parts)
        return parts

    def bind_known_inputs(self, state: RunState, graph: GraphStore) -> Dict[str, str]:
        """Match caller inputs to values in the current request.

        The oracle catches inputs whose form in the request differs from
        the caller's value (encoding, formatting). Its answers are only
        kept when the value really occurs in the request; if it fails,
        literal matching stands on its own.
        """
        if not state.input_variables or state.current_node is None:
            return {}
        node = graph.require_node(state.current_node)
        request = node.request
        if request is None:
            return {}
        curl = request.to_curl()
        literal = unquote_curl(curl)

        bound = {name: value for name, value in state.input_variables.items() if value and value in literal}
        if node.dynamic_parts:
            try:
                answer = self.oracle.identify_bound_inputs(curl, state.input_variables)
            except OracleError as exc:
                logger.warning("Input-variable lookup failed, using literal matches only: %s", exc)
                answer = {}
            for name, value in answer.items():
                if value and value in literal:
                    bound.setdefault(name, value)
                else:
                    logger.debug("Ignoring input binding %s=%r not present in request", name, value)

        if not bound:
            return {}
        given = set(bound.values())
        remaining = [p for p in node.dynamic_parts if p not in given]
        merged = dict(node.input_variables)
        merged.update(bound)
        graph.update_node(state.current_node, dynamic_parts=remaining, input_variables=merged)
        state.current_dynamic_parts = [p for p in state.current_dynamic_parts if p not in given]
        return bound

    def check_termination(self, state: RunState, graph: GraphStore) -> bool:
        """Report cycles and say whether the work queue is drained."""
        cycle = graph.detect_cycle()
        if cycle:
            logger.warning("Cycle detected in dependency graph: %s", cycle)
        return not state.work_queue

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _result(self, graph: GraphStore, state: RunState, status: RunStatus, reason: str = "") -> RunResult:
        return RunResult(
            graph=graph,
            master_node=state.master_node,
            status=status,
            reason=reason,
            cycle=graph.detect_cycle(),
            steps_used=state.steps_used,
            iterations=state.iterations,
            target_url=state.target_url,
        )
