"""Orchestration driver: per-node state machine, sequential and parallel runs."""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from kfleet.errors import NodeStepError
from kfleet.nodes import NodeAddress
from kfleet.ssh import NodeResult
from kfleet.state import StateStore


logger = logging.getLogger(__name__)


class NodeState(str, Enum):
    """Lifecycle of one node within one step. DONE and FAILED are terminal."""

    PENDING = "pending"
    PRE_HOOK = "pre-hook"
    EXECUTING = "executing"
    POST_HOOK = "post-hook"
    DONE = "done"
    FAILED = "failed"


# Outcome passed to post-hooks.
POST_SUCCESS = "success"
POST_CLEANUP = "cleanup"

# Upper bound on diagnostics collection for one failed node, in seconds.
DIAGNOSTICS_TIMEOUT = 30.0


@dataclass
class StepContext:
    """What an operation or hook knows about the node it runs on.

    Attributes:
        node: Target node.
        index: Position of the node in its list (0 is the primary).
        label: State-store step label.
        aux: Value returned by the pre-hook, if any.
    """

    node: NodeAddress
    index: int
    label: str
    aux: Any = None


Operation = Callable[[StepContext], Awaitable[NodeResult]]
PreHook = Callable[[StepContext], Awaitable[Any]]
PostHook = Callable[[StepContext, str], Awaitable[None]]


@dataclass
class NodeOutcome:
    """Result of one node step.

    Attributes:
        node: The node.
        label: Step label.
        state: Terminal state reached.
        returncode: Exit status of the operation (0 on success).
        message: Failure detail.
        handled: Failure was compensated (e.g. rolled back).
        skipped: Step was already done in resumed state.
        history: Every state the node passed through.
    """

    node: NodeAddress
    label: str
    state: NodeState = NodeState.PENDING
    returncode: int = 0
    message: str = ""
    handled: bool = False
    skipped: bool = False
    history: list[NodeState] = field(default_factory=lambda: [NodeState.PENDING])

    def advance(self, state: NodeState) -> None:
        self.state = state
        self.history.append(state)

    @property
    def ok(self) -> bool:
        return self.state == NodeState.DONE


@dataclass
class OperationReport:
    """Per-node outcomes of a whole operation, in execution order."""

    kind: str
    outcomes: list[NodeOutcome] = field(default_factory=list)

    def add(self, outcome: NodeOutcome) -> None:
        self.outcomes.append(outcome)

    @property
    def failed(self) -> list[NodeOutcome]:
        return [o for o in self.outcomes if o.state == NodeState.FAILED]

    @property
    def succeeded(self) -> list[NodeOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def ok(self) -> bool:
        return not self.failed


class Orchestrator:
    """Drives node steps and records their completion in the state store.

    Args:
        state: Active state store. Only this class marks steps done.
        prepare: Awaited once before the first step that actually runs
            (connectivity check, bundle distribution). Skipped steps never
            trigger it, so a fully resumed run touches no node.
        diagnostics: Best-effort collector awaited for each failed node.
        diagnostics_timeout: Seconds the collector may take before it is
            cancelled and the failure is reported without it.
    """

    def __init__(
        self,
        state: StateStore,
        prepare: Callable[[], Awaitable[None]] | None = None,
        diagnostics: Callable[[NodeAddress], Awaitable[None]] | None = None,
        diagnostics_timeout: float = DIAGNOSTICS_TIMEOUT,
    ):
        self.state = state
        self._prepare = prepare
        self._prepared = False
        self._prepare_lock = asyncio.Lock()
        self._diagnostics = diagnostics
        self._diagnostics_timeout = diagnostics_timeout

    async def ensure_prepared(self) -> None:
        async with self._prepare_lock:
            if self._prepared:
                return
            if self._prepare is not None:
                await self._prepare()
            self._prepared = True

    def _skip(self, node: NodeAddress, label: str) -> NodeOutcome:
        logger.info("[%s] Skipping %s (already done)", node.host, label)
        outcome = NodeOutcome(node=node, label=label, skipped=True)
        outcome.advance(NodeState.DONE)
        return outcome

    async def _collect_diagnostics(self, node: NodeAddress) -> None:
        if self._diagnostics is None:
            return
        try:
            await asyncio.wait_for(self._diagnostics(node), timeout=self._diagnostics_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "[%s] Diagnostics collection timed out after %ss", node.host, self._diagnostics_timeout
            )
        except Exception as exc:
            logger.warning("[%s] Diagnostics collection failed: %s", node.host, exc)

    async def _run_node(
        self,
        ctx: StepContext,
        operation: Operation,
        pre_hook: PreHook | None,
        post_hook: PostHook | None,
    ) -> NodeOutcome:
        outcome = NodeOutcome(node=ctx.node, label=ctx.label)
        try:
            if pre_hook is not None:
                outcome.advance(NodeState.PRE_HOOK)
                ctx.aux = await pre_hook(ctx)

            outcome.advance(NodeState.EXECUTING)
            result = await operation(ctx)
            if not result.ok:
                outcome.returncode = result.returncode
                outcome.message = result.stderr.strip() or f"exit {result.returncode}"
        except NodeStepError as exc:
            outcome.returncode = exc.returncode or 1
            outcome.message = str(exc)
            outcome.handled = exc.handled
        except Exception as exc:
            logger.exception("[%s] %s raised", ctx.node.host, ctx.label)
            outcome.returncode = outcome.returncode or 1
            outcome.message = str(exc)

        failed = bool(outcome.message) or outcome.returncode != 0

        if post_hook is not None:
            outcome.advance(NodeState.POST_HOOK)
            try:
                await post_hook(ctx, POST_CLEANUP if failed else POST_SUCCESS)
            except Exception as exc:
                logger.warning("[%s] Post-hook failed: %s", ctx.node.host, exc)

        if failed:
            outcome.advance(NodeState.FAILED)
            logger.error("[%s] %s failed: %s", ctx.node.host, ctx.label, outcome.message)
            await self._collect_diagnostics(ctx.node)
        else:
            outcome.advance(NodeState.DONE)
        return outcome

    async def run_single(
        self,
        node: NodeAddress,
        label: str,
        operation: Operation,
        report: OperationReport,
        index: int = 0,
    ) -> bool:
        """Run one guarded step on one node. Returns True on success."""
        if self.state.is_step_done(label):
            report.add(self._skip(node, label))
            return True
        await self.ensure_prepared()
        outcome = await self._run_node(StepContext(node, index, label), operation, None, None)
        report.add(outcome)
        if outcome.ok:
            self.state.mark_step_done(label)
        return outcome.ok

    async def run_sequential(
        self,
        nodes: list[NodeAddress],
        prefix: str,
        operation: Operation,
        report: OperationReport,
        pre_hook: PreHook | None = None,
        post_hook: PostHook | None = None,
        index_offset: int = 0,
        stop_on_failure: bool = True,
    ) -> bool:
        """Run a step node by node, in list order, stopping at the first failure.

        Node i's step is marked done before node i+1 starts.

        Args:
            nodes: Nodes in execution order.
            prefix: Step label prefix; the label is prefix + host.
            operation: The per-node step.
            report: Report receiving one outcome per visited node.
            pre_hook: Optional per-node setup; its result becomes ctx.aux.
            post_hook: Optional per-node teardown, called with "success" or
                "cleanup".
            index_offset: Index of nodes[0] within its full list.
            stop_on_failure: When False, every node is attempted even after
                a failure (for independent per-node maintenance).

        Returns:
            bool: True if every node succeeded or was already done.
        """
        all_ok = True
        for i, node in enumerate(nodes):
            label = f"{prefix}{node.host}"
            if self.state.is_step_done(label):
                report.add(self._skip(node, label))
                continue

            await self.ensure_prepared()
            ctx = StepContext(node=node, index=index_offset + i, label=label)
            outcome = await self._run_node(ctx, operation, pre_hook, post_hook)
            report.add(outcome)
            if not outcome.ok:
                all_ok = False
                if stop_on_failure:
                    return False
                continue
            self.state.mark_step_done(label)
        return all_ok

    async def run_parallel(
        self,
        nodes: list[NodeAddress],
        prefix: str,
        operation: Operation,
        report: OperationReport,
        pre_hook: PreHook | None = None,
        post_hook: PostHook | None = None,
    ) -> bool:
        """Run a step on all nodes concurrently and wait for every one.

        A failing node never cancels the others. Steps are marked done by
        this coordinator as each node finishes.

        Returns:
            bool: True if every node succeeded or was already done.
        """
        pending: list[StepContext] = []
        for i, node in enumerate(nodes):
            label = f"{prefix}{node.host}"
            if self.state.is_step_done(label):
                report.add(self._skip(node, label))
            else:
                pending.append(StepContext(node=node, index=i, label=label))

        if not pending:
            return True

        await self.ensure_prepared()
        tasks = [
            asyncio.ensure_future(self._run_node(ctx, operation, pre_hook, post_hook))
            for ctx in pending
        ]
        all_ok = True
        try:
            for next_done in asyncio.as_completed(tasks):
                outcome = await next_done
                report.add(outcome)
                if outcome.ok:
                    self.state.mark_step_done(outcome.label)
                else:
                    all_ok = False
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
        return all_ok
