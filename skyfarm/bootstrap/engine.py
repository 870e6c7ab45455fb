"""Node bootstrap state machine.

Drives one freshly created server to an attached build agent::

    WAITING_FOR_POWER -> WAITING_FOR_NETWORK -> CONNECTING -> AUTHENTICATING
        -> RUNNING_INIT_SCRIPT -> INSTALLING_RUNTIME -> LAUNCHING_AGENT -> ATTACHED

Any state may end in FAILED, which removes the node from the directory (and
so hands its server to the decommission queue). The engine holds no state
across nodes; everything per-node lives in a ``_Run``.
"""

from __future__ import annotations

import asyncio
import shlex
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final, TypeAlias

import asyncssh
from loguru import logger

from skyfarm.errors import (
    BootstrapAuthFailure,
    BootstrapError,
    BootstrapTimeout,
    InitScriptFailed,
    ProviderError,
    RuntimeInstallFailed,
    UnexpectedRemoteState,
)
from skyfarm.infra.ssh import SSHTransport
from skyfarm.provider.types import ServerStatus

from .channel import AgentChannel
from .installers import INSTALLERS, RUNTIME_VERSION_CHECK, RUNTIME_VERSIONS, RuntimeInstaller

if TYPE_CHECKING:
    from skyfarm.config import PoolConfig
    from skyfarm.directory import ManagedNode, NodeDirectory
    from skyfarm.provider.gateway import ProviderGateway

POLL_INTERVAL: Final = 10.0
INIT_SCRIPT_PATH: Final = "/tmp/init.sh"
INIT_MARKER: Final = "~/.hudson-run-init"
AGENT_PATH: Final = "/tmp/slave.jar"


class BootstrapState(StrEnum):
    WAITING_FOR_POWER = "WAITING_FOR_POWER"
    WAITING_FOR_NETWORK = "WAITING_FOR_NETWORK"
    CONNECTING = "CONNECTING"
    AUTHENTICATING = "AUTHENTICATING"
    RUNNING_INIT_SCRIPT = "RUNNING_INIT_SCRIPT"
    INSTALLING_RUNTIME = "INSTALLING_RUNTIME"
    LAUNCHING_AGENT = "LAUNCHING_AGENT"
    ATTACHED = "ATTACHED"
    FAILED = "FAILED"


TransportFactory: TypeAlias = Callable[[str, int], SSHTransport]


@dataclass
class _Run:
    node: ManagedNode
    started: float
    log: Any
    state: BootstrapState = BootstrapState.WAITING_FOR_POWER

    def console(self, line: str) -> None:
        self.log.info("| {line}", line=line)


class BootstrapEngine:
    """Bootstraps nodes of one pool.

    Args:
        pool: Pool the nodes belong to; supplies the timeout.
        gateway: Provider access for status polling.
        directory: Where failed nodes are rolled back from.
        agent_payload: Bytes of the agent jar copied to every node.
        poll_interval: Seconds between status polls.
        timeout: Overrides the pool's bootstrap timeout (seconds).
        installers: Ordered runtime install strategies.
        transport_factory: Builds an unopened transport for (host, port).
    """

    def __init__(
        self,
        pool: PoolConfig,
        gateway: ProviderGateway,
        directory: NodeDirectory,
        agent_payload: bytes,
        *,
        poll_interval: float = POLL_INTERVAL,
        timeout: float | None = None,
        installers: tuple[RuntimeInstaller, ...] = INSTALLERS,
        runtime_versions: tuple[str, ...] = RUNTIME_VERSIONS,
        transport_factory: TransportFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._pool = pool
        self._gateway = gateway
        self._directory = directory
        self._agent_payload = agent_payload
        self._poll_interval = poll_interval
        self._timeout = timeout if timeout is not None else pool.bootstrap_timeout
        self._installers = installers
        self._runtime_versions = runtime_versions
        self._transport_factory = transport_factory or (
            lambda host, port: SSHTransport(host=host, port=port)
        )
        self._clock = clock

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def bootstrap(self, node: ManagedNode) -> AgentChannel:
        """Bring ``node`` to ATTACHED and return its agent channel.

        Raises:
            BootstrapError: After the node has been removed from the directory.
        """
        run = _Run(
            node=node,
            started=self._clock(),
            log=logger.bind(component="bootstrap", pool=self._pool.name, node=node.name),
        )
        run.log.info("Start time: {t}", t=datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S %Z"))

        transport: SSHTransport | None = None
        attached = False
        try:
            transport = await self._connect(run)
            await self._run_init_script(run, transport)
            await self._install_runtime(run, transport)
            channel = await self._launch_agent(run, transport)
            self._enter(run, BootstrapState.ATTACHED)
            node.channel = channel
            node.mark_idle()
            attached = True
            return channel
        except Exception as e:
            failed_in = run.state
            self._enter(run, BootstrapState.FAILED)
            run.log.error(
                "Bootstrap failed in {state} after {elapsed:.0f}s: {error}",
                state=failed_in, elapsed=self._clock() - run.started, error=e,
            )
            self._rollback(run)
            if isinstance(e, BootstrapError):
                raise
            raise BootstrapError(failed_in, str(e) or type(e).__name__) from e
        finally:
            run.log.info(
                "Done setting up at: {t}", t=datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S %Z")
            )
            run.log.info("Done in {s:.0f} seconds", s=self._clock() - run.started)
            if transport is not None and not attached:
                await transport.close()

    def _enter(self, run: _Run, state: BootstrapState) -> None:
        if state is run.state:
            return
        run.log.info("{old} -> {new}", old=run.state, new=state)
        run.state = state

    def _rollback(self, run: _Run) -> None:
        try:
            self._directory.remove(run.node.name)
        except Exception as e:
            run.log.warning("Failed to remove node after bootstrap failure: {error}", error=e)

    def _privileged(self, node: ManagedNode, command: str) -> str:
        if node.remote_admin == "root":
            return command
        return f"sudo -n sh -c {shlex.quote(command)}"

    # -------------------------------------------------------------------------
    # WAITING_FOR_POWER / WAITING_FOR_NETWORK / CONNECTING / AUTHENTICATING
    # -------------------------------------------------------------------------

    async def _connect(self, run: _Run) -> SSHTransport:
        node = run.node
        elapsed = 0.0

        while (elapsed := self._clock() - run.started) < self._timeout:
            try:
                server = await self._gateway.get_server(node.server_id)
            except ProviderError as e:
                if not e.transient:
                    raise
                run.log.warning("Failed to fetch server state, will retry: {error}", error=e)
                await asyncio.sleep(self._poll_interval)
                continue

            if server.status.starting:
                self._enter(run, BootstrapState.WAITING_FOR_POWER)
                run.log.info(
                    "Waiting for server to enter POWERED_ON state ({status}). Sleeping {s:.0f} seconds.",
                    status=server.status, s=self._poll_interval,
                )
            elif server.status is ServerStatus.POWERED_ON:
                self._enter(run, BootstrapState.WAITING_FOR_NETWORK)
                host = server.address
                if host is None:
                    run.log.info("No ip address yet, the server is most likely waiting for one.")
                else:
                    transport = await self._open(run, host)
                    if transport is not None:
                        return transport
                run.log.info(
                    "Waiting for SSH to come up. Sleeping {s:.0f} seconds.", s=self._poll_interval
                )
            else:
                raise UnexpectedRemoteState(run.state, server.status)

            await asyncio.sleep(self._poll_interval)

        raise BootstrapTimeout(run.state, elapsed, self._timeout)

    async def _open(self, run: _Run, host: str) -> SSHTransport | None:
        """Open and authenticate; None means "not reachable yet, poll again"."""
        node = run.node
        self._enter(run, BootstrapState.CONNECTING)
        run.log.info("Connecting to {host} on port {port}", host=host, port=node.ssh_port)

        transport = self._transport_factory(host, node.ssh_port)
        try:
            await transport.open()
        except (TimeoutError, OSError) as e:
            run.log.info("Connection to {host} failed: {error}", host=host, error=str(e) or type(e).__name__)
            await transport.close()
            return None
        run.log.info("Connected via SSH")

        self._enter(run, BootstrapState.AUTHENTICATING)
        run.log.info("Authenticating as {user}", user=node.remote_admin)
        try:
            await transport.authenticate(node.remote_admin, node.private_key)
        except asyncssh.PermissionDenied as e:
            await transport.close()
            raise BootstrapAuthFailure(run.state, f"authentication failed: {e.reason}") from e
        except (asyncssh.Error, TimeoutError, OSError) as e:
            run.log.info("SSH handshake with {host} failed: {error}", host=host, error=e)
            await transport.close()
            return None
        return transport

    # -------------------------------------------------------------------------
    # RUNNING_INIT_SCRIPT
    # -------------------------------------------------------------------------

    async def _run_init_script(self, run: _Run, transport: SSHTransport) -> None:
        node = run.node
        script = node.init_script.strip()
        if not script:
            return

        self._enter(run, BootstrapState.RUNNING_INIT_SCRIPT)
        if await transport.file_exists(INIT_MARKER):
            run.log.info("Init script already ran on this node, skipping")
            return

        run.log.info("Executing init script")
        await transport.write_bytes(INIT_SCRIPT_PATH, script.encode("utf-8"), 0o700)
        code = await transport.run_pty(self._privileged(node, INIT_SCRIPT_PATH), run.console)
        if code != 0:
            raise InitScriptFailed(run.state, code)

        await transport.run_pty(f"touch {INIT_MARKER}", run.console)

    # -------------------------------------------------------------------------
    # INSTALLING_RUNTIME
    # -------------------------------------------------------------------------

    async def _install_runtime(self, run: _Run, transport: SSHTransport) -> None:
        self._enter(run, BootstrapState.INSTALLING_RUNTIME)
        run.log.info("Verifying that java exists")
        code, _, _ = await transport.run(RUNTIME_VERSION_CHECK)
        if code == 0:
            return

        run.log.info(
            "Try to install one of these Java versions: {versions}",
            versions=", ".join(self._runtime_versions),
        )
        for installer in self._installers:
            run.log.info("Checking: {cmd}", cmd=installer.detect_command)
            code, _, _ = await transport.run(installer.detect_command)
            if code != 0:
                continue

            for version in self._runtime_versions:
                command = self._privileged(run.node, installer.install_command(version))
                run.log.info("Installing via {name}: {cmd}", name=installer.name, cmd=command)
                if await transport.run_pty(command, run.console) == 0:
                    return

        raise RuntimeInstallFailed(
            run.state, "Java could not be installed using any of the supported package managers"
        )

    # -------------------------------------------------------------------------
    # LAUNCHING_AGENT
    # -------------------------------------------------------------------------

    async def _launch_agent(self, run: _Run, transport: SSHTransport) -> AgentChannel:
        node = run.node
        self._enter(run, BootstrapState.LAUNCHING_AGENT)

        run.log.info("Copying agent to {path}", path=AGENT_PATH)
        await transport.write_bytes(AGENT_PATH, self._agent_payload, 0o775)

        command = " ".join(["java", *node.agent_options.split(), "-jar", AGENT_PATH])
        run.log.info("Launching agent: {cmd}", cmd=command)
        process = await transport.create_process(command)
        return AgentChannel(process, transport, node.name)
