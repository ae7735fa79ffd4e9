"""Shared lifecycle of one operation run.

Every operation (deploy, upgrade, backup, ...) runs inside `operation()`:
credentials and SSH trust are set up first, then the bundle is validated
and the state store opened. Node preparation (connectivity check plus
bundle transfer) is deferred until the first step that actually has to
run. Cleanup actions unwind in reverse order on success, failure and
interrupt alike.
"""

import logging
import shutil
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from kfleet.bundle import Bundle, BundleLocation, BundleLocations, build_bundle, cleanup_all, distribute_to
from kfleet.cleanup import CleanupStack
from kfleet.config import OrchestratorConfig
from kfleet.diagnostics import collect_diagnostics, diagnostics_dir
from kfleet.driver import OperationReport, Orchestrator
from kfleet.errors import BundleTransferError, OperationFailed
from kfleet.log import audit
from kfleet.nodes import NodeAddress
from kfleet.session import check_connectivity, open_session
from kfleet.ssh import SSHSession
from kfleet.state import StateStore


logger = logging.getLogger(__name__)


@dataclass
class OperationContext:
    """Everything a running operation needs, shared by all its node steps."""

    kind: str
    config: OrchestratorConfig
    session: SSHSession
    state: StateStore
    cleanup: CleanupStack
    bundle: Bundle | None
    locations: BundleLocations
    orchestrator: Orchestrator
    report: OperationReport
    nodes: list[NodeAddress]

    def location(self, node: NodeAddress) -> BundleLocation:
        return self.locations[node]

    async def ensure_prepared(self) -> None:
        """Connectivity check and bundle transfer, done at most once."""
        await self.orchestrator.ensure_prepared()

    def fail(self, message: str) -> None:
        """Abort the operation with the report collected so far."""
        raise OperationFailed(message, self.report)


@asynccontextmanager
async def operation(
    kind: str,
    config: OrchestratorConfig,
    nodes: list[NodeAddress],
    session: SSHSession | None = None,
    resume: bool | None = None,
    needs_bundle: bool = True,
    **audit_details: object,
) -> AsyncIterator[OperationContext]:
    """Run an operation body with bundle, session, state and cleanup set up.

    The state is sealed only if the body returns normally; any exception
    leaves it failed (and resumable) and is re-raised after cleanup.

    Args:
        kind: Operation kind, used for state files and audit entries.
        config: Orchestrator configuration.
        nodes: Every node the operation may touch.
        session: Pre-built session. Defaults to one opened from config.
        resume: Override config.resume for this run.
        needs_bundle: Build and distribute the bundle. Operations that
            only run plain commands on nodes turn this off.
        **audit_details: Extra fields for the audit entries.

    Yields:
        OperationContext: The context for the operation body.
    """
    audit(kind, "started", nodes=len(nodes), **audit_details)
    cleanup = CleanupStack()
    state: StateStore | None = None
    try:
        if session is None:
            session = open_session(kind, config, cleanup)

        bundle = None
        if needs_bundle:
            bundle = build_bundle(config.bundle)
            cleanup.push("local bundle removal", shutil.rmtree, bundle.path.parent, True)

        state = StateStore(config.state_dir)
        state.open(kind, config.resume if resume is None else resume)

        locations = BundleLocations()
        cleanup.push("remote bundle cleanup", cleanup_all, session, locations)

        async def prepare() -> None:
            await check_connectivity(session, nodes)
            if bundle is None:
                return
            failures = await distribute_to(session, bundle, nodes, locations)
            if failures:
                raise BundleTransferError(failures)

        diagnostics = None
        if config.collect_diagnostics:
            diag_dir = diagnostics_dir(config.diagnostics_dir, kind)

            async def diagnostics(node: NodeAddress) -> None:
                await collect_diagnostics(session, node, diag_dir)

        ctx = OperationContext(
            kind=kind,
            config=config,
            session=session,
            state=state,
            cleanup=cleanup,
            bundle=bundle,
            locations=locations,
            orchestrator=Orchestrator(state, prepare=prepare, diagnostics=diagnostics),
            report=OperationReport(kind),
            nodes=nodes,
        )

        yield ctx

        if not ctx.report.ok:
            ctx.fail(f"{kind} failed on {len(ctx.report.failed)} node(s)")
        state.complete()
        audit(kind, "completed", nodes=len(nodes), **audit_details)
    except BaseException:
        if state is not None and state.state_id is not None:
            state.fail()
        audit(kind, "failed", nodes=len(nodes), **audit_details)
        raise
    finally:
        await cleanup.run()
