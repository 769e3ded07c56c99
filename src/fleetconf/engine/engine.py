"""Multi-host execution engine.

Fans one operation out over many hosts, one worker thread per host bounded by
a semaphore, and fans the outcomes back into an ``ExecutionReport`` with one
slot per host. A failure on one host never affects another.
"""

import asyncio
import functools
import threading
import time
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional

from fleetconf.config.schemas import EngineConfig, FleetConfig
from fleetconf.engine.inventory import Host, HostRegistry
from fleetconf.engine.operations import Operation, OperationContext
from fleetconf.engine.results import ExecutionReport, ExecutionResult
from fleetconf.engine.sessions import SessionPool
from fleetconf.errors import Cancelled, ConnectionTimeout, FleetError, UnknownHost
from fleetconf.ops.renderer import TemplateRenderer
from fleetconf.telemetry.logger import bound_context, get_logger
from fleetconf.transport.session import ConnectionParams, SessionFactory
from fleetconf.transport.ssh import SSHSession

logger = get_logger(__name__)


class ExecutionEngine:
    """Applies operations to registered hosts concurrently.

    Example:
        with ExecutionEngine() as engine:
            engine.register_host("web1", ConnectionParams(address="10.0.0.5"))
            report = engine.apply(RunCommand("uptime"), ["web1"])
            print(report.status)
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        session_factory: Optional[SessionFactory] = None,
        renderer: Optional[TemplateRenderer] = None,
        registry: Optional[HostRegistry] = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Engine settings (concurrency, timeouts, retries)
            session_factory: Opens sessions; defaults to SSH
            renderer: Template renderer used by template deploys
            registry: Host registry; a fresh empty one by default
        """
        self.config = config or EngineConfig()
        self.registry = registry if registry is not None else HostRegistry()

        factory = session_factory or functools.partial(
            SSHSession.connect,
            timeout=self.config.connect_timeout,
            command_timeout=self.config.command_timeout,
        )
        self._pool = SessionPool(
            factory,
            connect_retries=self.config.connect_retries,
            retry_delay=self.config.retry_delay,
            keep_warm=self.config.keep_sessions_warm,
        )
        self.context = OperationContext(
            renderer=renderer or TemplateRenderer(),
            command_timeout=self.config.command_timeout,
        )
        self._cancel_events: set[threading.Event] = set()
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: FleetConfig,
        session_factory: Optional[SessionFactory] = None,
        inventory_path: Optional[Path] = None,
    ) -> "ExecutionEngine":
        """Build an engine, renderer and registry from a loaded configuration."""
        renderer = TemplateRenderer(
            search_paths=config.templates.search_paths,
            strict=config.templates.strict_undefined,
        )
        return cls(
            config=config.engine,
            session_factory=session_factory,
            renderer=renderer,
            registry=HostRegistry(inventory_path or config.inventory_file),
        )

    @property
    def pool(self) -> SessionPool:
        return self._pool

    def register_host(
        self,
        name: str,
        params: ConnectionParams,
        groups: Iterable[str] = (),
        labels: Optional[Mapping[str, str]] = None,
    ) -> Host:
        """Add a host to the registry.

        Raises:
            ValueError: If the name is already registered
            RegistryBusyError: If an apply is in flight
        """
        host = Host(name=name, params=params, groups=frozenset(groups), labels=dict(labels or {}))
        self.registry.add(host)
        return host

    def deregister_host(self, name: str) -> bool:
        """Remove a host and close its pooled session.

        Raises:
            RegistryBusyError: If an apply is in flight
        """
        removed = self.registry.remove(name)
        if removed:
            self._pool.close_host(name)
        return removed

    def apply(
        self,
        operation: Operation,
        hosts: Iterable[str],
        *,
        max_concurrency: Optional[int] = None,
        host_timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExecutionReport:
        """Apply ``operation`` to every named host.

        Never raises for per-host failures; each host's outcome, success or
        error, lands in its own slot of the returned report.

        Args:
            operation: What to run on each host
            hosts: Target host names; duplicates are collapsed
            max_concurrency: Hosts in flight at once; 0 means no limit
            host_timeout: Wall-clock budget per host in seconds
            cancel_event: Set to stop starting new hosts

        Returns:
            ExecutionReport with exactly one result per target host
        """
        targets = list(dict.fromkeys(hosts))
        limit = self.config.max_concurrency if max_concurrency is None else max_concurrency
        if limit < 0:
            raise ValueError("max_concurrency must be >= 0")
        timeout = self.config.host_timeout if host_timeout is None else host_timeout
        if timeout is not None and timeout <= 0:
            raise ValueError("host_timeout must be > 0")

        run_id = uuid.uuid4().hex[:8]
        local_cancel = threading.Event()
        with self._lock:
            self._cancel_events.add(local_cancel)

        def cancelled() -> bool:
            return local_cancel.is_set() or (cancel_event is not None and cancel_event.is_set())

        start_time = time.perf_counter()
        slots: dict[str, Optional[ExecutionResult]] = {name: None for name in targets}

        logger.info(
            "Dispatch started",
            run_id=run_id,
            operation=operation.describe(),
            hosts=len(targets),
            max_concurrency=limit,
        )

        try:
            with self.registry.dispatch():
                resolved = self.registry.snapshot(targets)
                runnable: list[Host] = []
                for name, host in resolved.items():
                    if host is None:
                        slots[name] = ExecutionResult.err(name, UnknownHost(name))
                    else:
                        runnable.append(host)

                semaphore = threading.Semaphore(limit or max(len(runnable), 1))
                threads = [
                    threading.Thread(
                        target=self._supervise,
                        args=(host, operation, run_id, semaphore, timeout, cancelled, slots),
                        name=f"fleetconf-{host.name}",
                        daemon=True,
                    )
                    for host in runnable
                ]
                for thread in threads:
                    thread.start()
                for thread in threads:
                    thread.join()
        finally:
            with self._lock:
                self._cancel_events.discard(local_cancel)

        duration_ms = (time.perf_counter() - start_time) * 1000
        report = ExecutionReport(
            operation.kind,
            {name: slots[name] for name in targets},
            duration_ms=duration_ms,
        )

        logger.info(
            "Dispatch completed",
            run_id=run_id,
            operation=operation.kind,
            status=report.status.value,
            successful=len(report.successful),
            failed=len(report.failed),
            changed=len(report.changed),
            duration_ms=duration_ms,
        )
        return report

    def apply_to_all(self, operation: Operation, **kwargs: Any) -> ExecutionReport:
        """Apply ``operation`` to every registered host."""
        return self.apply(operation, self.registry.names(), **kwargs)

    def apply_to_group(self, operation: Operation, group: str, **kwargs: Any) -> ExecutionReport:
        """Apply ``operation`` to the hosts of an inventory group.

        Raises:
            KeyError: If the group has no members
        """
        return self.apply(operation, self.registry.hosts_in_group(group), **kwargs)

    async def apply_async(
        self,
        operation: Operation,
        hosts: Iterable[str],
        **kwargs: Any,
    ) -> ExecutionReport:
        """Run ``apply`` in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            functools.partial(self.apply, operation, list(hosts), **kwargs),
        )

    def cancel(self) -> None:
        """Stop every in-flight apply from starting further hosts."""
        with self._lock:
            events = list(self._cancel_events)
        for event in events:
            event.set()
        logger.info("Cancellation requested", dispatches=len(events))

    def close(self) -> None:
        """Close all pooled sessions."""
        self._pool.close_all()

    def __enter__(self) -> "ExecutionEngine":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _supervise(
        self,
        host: Host,
        operation: Operation,
        run_id: str,
        semaphore: threading.Semaphore,
        timeout: Optional[float],
        cancelled: Callable[[], bool],
        slots: dict[str, Optional[ExecutionResult]],
    ) -> None:
        with semaphore:
            if cancelled():
                slots[host.name] = ExecutionResult.err(
                    host.name, Cancelled("Dispatch cancelled before host started")
                )
                return

            box: dict[str, ExecutionResult] = {}
            abandoned = threading.Event()
            start_time = time.perf_counter()
            worker = threading.Thread(
                target=self._run_unit,
                args=(host, operation, run_id, box, abandoned),
                name=f"fleetconf-{host.name}-unit",
                daemon=True,
            )
            worker.start()
            worker.join(timeout)

            if worker.is_alive():
                # The abandoned worker's result is never read.
                abandoned.set()
                self._pool.abort(host.name)
                duration_ms = (time.perf_counter() - start_time) * 1000
                logger.warning("Host timed out", run_id=run_id, host=host.name, timeout=timeout)
                slots[host.name] = ExecutionResult.err(
                    host.name,
                    ConnectionTimeout(f"Host did not finish within {timeout}s", timeout=timeout),
                    duration_ms=duration_ms,
                )
                return

            slots[host.name] = box["result"]

    def _run_unit(
        self,
        host: Host,
        operation: Operation,
        run_id: str,
        box: dict[str, ExecutionResult],
        abandoned: threading.Event,
    ) -> None:
        start_time = time.perf_counter()
        with bound_context(run_id=run_id, host=host.name, operation=operation.kind):
            try:
                with self._pool.lease(host, abandoned) as session:
                    if abandoned.is_set():
                        raise ConnectionTimeout(f"Gave up on {host.name} before the operation started")
                    result = operation.execute(session, self.context)
            except FleetError as e:
                logger.warning("Host failed", error_kind=e.kind.value, error=str(e))
                result = ExecutionResult.err(host.name, e)
            except Exception as e:
                logger.exception("Unexpected error on host")
                result = ExecutionResult.err(host.name, e)

        duration_ms = (time.perf_counter() - start_time) * 1000
        box["result"] = replace(result, duration_ms=duration_ms)
        logger.debug(
            "Host finished",
            run_id=run_id,
            host=host.name,
            success=result.success,
            changed=result.changed,
            duration_ms=duration_ms,
        )
