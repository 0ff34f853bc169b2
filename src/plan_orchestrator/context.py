"""Process-wide orchestrator state, passed explicitly to every service.

The context owns the live agent registry, the in-memory "executing" markers
and the per-plan locks, and wraps the persisted repositories with the event
emission every mutation needs.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from .activity import ActivityLog
from .agents.credentials import CredentialProvider
from .agents.headless import HeadlessAgentRunner, HeadlessAgentSpec, HeadlessResult, SubprocessHeadlessRunner
from .config import (
    get_agent_config,
    get_dispatch_config,
    get_headless_config,
    get_repositories,
    get_task_store_config,
    load_orchestrator_config,
)
from .constants import COMPLETION_MARKERS
from .domain.models import AgentKind, AgentRecord, Plan, Repository, TaskAssignment
from .errors import CredentialError, PlanNotFoundError
from .events.bus import EventBus
from .git_coordinator import GitCoordinator, get_git_coordinator
from .storage.container import Container
from .task_store.bd_client import BdTaskStore
from .task_store.interfaces import TaskStore, TaskStoreFactory
from .terminal.automaton import Scheduler, TerminalAutomaton, TerminalRegistry, timer_scheduler
from .terminal.host import ProcessHost, PtyProcessHost
from .terminal.sessions import SessionStore

logger = logging.getLogger(__name__)

Background = Callable[[Callable[[], None]], None]
CompletionCheck = Callable[[str], bool]

_TAIL_CHARS = 512


def marker_check(markers: Iterable[str] = COMPLETION_MARKERS) -> CompletionCheck:
    """Return a check that fires when any of `markers` appears in the output."""
    marker_list = list(markers)

    def check(text: str) -> bool:
        return any(marker in text for marker in marker_list)

    return check


class OrchestratorContext:
    def __init__(
        self,
        container: Container,
        bus: Optional[EventBus] = None,
        *,
        process_host: Optional[ProcessHost] = None,
        headless_runner: Optional[HeadlessAgentRunner] = None,
        task_store_factory: Optional[TaskStoreFactory] = None,
        credentials: Optional[CredentialProvider] = None,
        scheduler: Scheduler = timer_scheduler,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        background: Optional[Background] = None,
    ) -> None:
        self.container = container
        self.bus = bus or EventBus(container.events)

        config, err = load_orchestrator_config(container.state_root)
        if err:
            logger.warning("Ignoring unreadable config: %s", err)
        self.dispatch_config = get_dispatch_config(config)
        self.agent_config = get_agent_config(config)
        self.headless_config = get_headless_config(config)
        self.task_store_config = get_task_store_config(config)
        self.label_prefix: str = self.dispatch_config["label_prefix"]
        self.mode: str = self.dispatch_config["mode"]

        self.activities = ActivityLog(container.activities, self.bus)
        self.sessions = SessionStore(container.sessions)
        self.terminals = TerminalRegistry(
            process_host or PtyProcessHost(),
            self.bus,
            self.sessions,
            self.agent_config,
            trust_marker=container.state_root.name,
            scheduler=scheduler,
            clock=clock,
            sleep=sleep,
        )
        self.credentials = credentials or CredentialProvider(
            container.credentials, self.headless_config["oauth_token"]
        )
        self.headless = headless_runner or SubprocessHeadlessRunner(
            self.headless_config["command"], oauth_token=self.credentials.get_token
        )
        self.git: GitCoordinator = get_git_coordinator()
        self.sleep = sleep

        self._task_store_factory = task_store_factory or self._default_task_store
        self._task_stores: dict[str, TaskStore] = {}
        self._agents: dict[str, AgentRecord] = {}
        self._executing: set[str] = set()
        self._plan_locks: dict[str, threading.RLock] = {}
        self._lock = threading.RLock()
        self._pool: Optional[ThreadPoolExecutor] = None
        self._background = background

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def run_in_background(self, fn: Callable[[], None], name: str = "background task") -> None:
        """Run `fn` off the calling thread; failures are logged, never raised."""

        def guarded() -> None:
            try:
                fn()
            except Exception:
                logger.exception("%s failed", name)

        if self._background is not None:
            self._background(guarded)
            return
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="plan-orchestrator")
            pool = self._pool
        pool.submit(guarded)

    def shutdown(self) -> None:
        self.terminals.close_all()
        self.headless.stop_all()
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=False, cancel_futures=False)

    # ------------------------------------------------------------------
    # Repositories and task stores
    # ------------------------------------------------------------------

    def repositories(self) -> list[Repository]:
        return get_repositories(self.container.config.load())

    def repository_by_name(self, name: str) -> Optional[Repository]:
        for repo in self.repositories():
            if repo.name == name:
                return repo
        return None

    def repository_by_id(self, repo_id: str) -> Optional[Repository]:
        for repo in self.repositories():
            if repo.id == repo_id or repo.name == repo_id:
                return repo
        return None

    def plan_dir(self, plan_id: str) -> Path:
        return self.container.plan_dir(plan_id)

    def _default_task_store(self, plan_id: str) -> TaskStore:
        return BdTaskStore(
            self.plan_dir(plan_id),
            binary=self.task_store_config["binary"],
            prefix=self.label_prefix,
        )

    def task_store(self, plan_id: str) -> TaskStore:
        with self._lock:
            store = self._task_stores.get(plan_id)
            if store is None:
                store = self._task_store_factory(plan_id)
                self._task_stores[plan_id] = store
            return store

    def forget_task_store(self, plan_id: str) -> None:
        with self._lock:
            self._task_stores.pop(plan_id, None)

    # ------------------------------------------------------------------
    # Plans and assignments
    # ------------------------------------------------------------------

    def plan_lock(self, plan_id: str) -> threading.RLock:
        with self._lock:
            lock = self._plan_locks.get(plan_id)
            if lock is None:
                lock = threading.RLock()
                self._plan_locks[plan_id] = lock
            return lock

    def find_plan(self, plan_id: str) -> Optional[Plan]:
        return self.container.plans.get(plan_id)

    def get_plan(self, plan_id: str) -> Plan:
        plan = self.container.plans.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    def emit_plan(self, plan: Plan) -> None:
        self.bus.emit(channel="plans", event_type="plan.updated", entity_id=plan.id, payload=plan.to_dict())

    def save_plan(self, plan: Plan) -> Plan:
        with self.plan_lock(plan.id):
            plan.touch()
            self.container.plans.upsert(plan)
        self.emit_plan(plan)
        return plan

    def mutate_plan(self, plan_id: str, mutate: Callable[[Plan], Any]) -> Plan:
        """Load the freshest copy of a plan, apply `mutate`, persist and emit it.

        Long-running git work must happen outside this call; the plan lock is
        held for the whole read-modify-write.
        """
        with self.plan_lock(plan_id):
            plan = self.get_plan(plan_id)
            mutate(plan)
            plan.touch()
            self.container.plans.upsert(plan)
        self.emit_plan(plan)
        return plan

    def save_assignment(self, assignment: TaskAssignment) -> TaskAssignment:
        self.container.assignments.upsert(assignment)
        self.bus.emit(
            channel="assignments",
            event_type="assignment.updated",
            entity_id=assignment.bead_id,
            payload=assignment.to_dict(),
        )
        return assignment

    def assignments(self, plan_id: str) -> list[TaskAssignment]:
        return self.container.assignments.list(plan_id)

    # ------------------------------------------------------------------
    # Execution markers
    # ------------------------------------------------------------------

    def mark_executing(self, plan_id: str) -> bool:
        """Claim the executing marker; False when another caller holds it."""
        with self._lock:
            if plan_id in self._executing:
                return False
            self._executing.add(plan_id)
            return True

    def release_executing(self, plan_id: str) -> None:
        with self._lock:
            self._executing.discard(plan_id)

    def is_executing(self, plan_id: str) -> bool:
        with self._lock:
            return plan_id in self._executing

    # ------------------------------------------------------------------
    # Live agents
    # ------------------------------------------------------------------

    def register_agent(self, record: AgentRecord) -> None:
        with self._lock:
            self._agents[record.id] = record
        self.bus.emit(channel="agents", event_type="agent.started", entity_id=record.id, payload=record.to_dict())

    def unregister_agent(self, agent_id: str) -> Optional[AgentRecord]:
        with self._lock:
            return self._agents.pop(agent_id, None)

    def get_agent(self, agent_id: str) -> Optional[AgentRecord]:
        with self._lock:
            return self._agents.get(agent_id)

    def agents_for_plan(self, plan_id: str) -> list[AgentRecord]:
        with self._lock:
            return [a for a in self._agents.values() if a.plan_id == plan_id]

    def is_agent_alive(self, agent_id: Optional[str]) -> bool:
        return bool(agent_id) and self.get_agent(agent_id or "") is not None

    def start_interactive_agent(
        self,
        plan_id: str,
        agent_id: str,
        kind: AgentKind,
        working_dir: str,
        prompt: Optional[str],
        *,
        flags: Optional[str] = None,
        auto_accept: bool = False,
        task_id: Optional[str] = None,
        completion: Optional[CompletionCheck] = None,
        on_complete: Optional[Callable[[], None]] = None,
    ) -> AgentRecord:
        """Spawn an agent in a terminal.

        `on_complete` runs in the background once `completion` matches the
        terminal output; it fires at most once per agent.

        Raises:
            AgentSpawnError: If the terminal cannot be started.
        """
        fired = threading.Event()
        tail: list[str] = [""]

        def watch(chunk: str) -> None:
            if fired.is_set() or completion is None or on_complete is None:
                return
            tail[0] = (tail[0] + chunk)[-_TAIL_CHARS:]
            if completion(tail[0]):
                fired.set()
                logger.info("Agent %s signalled completion", agent_id)
                self.run_in_background(on_complete, name=f"completion of {agent_id}")

        def exited(automaton: TerminalAutomaton, exit_code: Optional[int]) -> None:
            record = self.get_agent(agent_id)
            if record is not None and record.terminal_id == automaton.id:
                self.unregister_agent(agent_id)
            logger.info("Agent %s terminal exited with %s", agent_id, exit_code)

        automaton = self.terminals.create(
            agent_id,
            working_dir,
            plan_id=plan_id,
            prompt=prompt,
            flags=flags,
            auto_accept=auto_accept,
            on_exit=exited,
        )
        automaton.channel.subscribe(watch)
        record = AgentRecord(
            id=agent_id,
            plan_id=plan_id,
            kind=kind,
            mode="interactive",
            working_dir=working_dir,
            task_id=task_id,
            terminal_id=automaton.id,
        )
        self.register_agent(record)
        return record

    def ensure_credentials(self, plan_id: str) -> str:
        """Return the headless access token, running the setup flow when none is stored.

        Raises:
            CredentialError: If setup fails.
        """
        token = self.credentials.get_token()
        if token:
            return token
        self.activities.add(plan_id, "info", "OAuth token required - starting setup")
        try:
            token = self.credentials.run_setup_token()
        except CredentialError as exc:
            self.activities.add(plan_id, "error", "OAuth setup failed", str(exc))
            raise
        self.activities.add(plan_id, "success", "OAuth token obtained")
        return token

    def start_headless_agent(
        self,
        plan_id: str,
        agent_id: str,
        kind: AgentKind,
        working_dir: str,
        prompt: str,
        *,
        task_id: Optional[str] = None,
        on_complete: Optional[Callable[[HeadlessResult], None]] = None,
    ) -> AgentRecord:
        """Start a headless agent after making sure a credential exists.

        Raises:
            CredentialError: If no credential can be obtained.
            AgentSpawnError: If the process cannot be started.
        """
        self.ensure_credentials(plan_id)

        def on_event(event: dict[str, Any]) -> None:
            self.bus.emit(
                channel="agents",
                event_type="headless.event",
                entity_id=agent_id,
                payload={"agent_id": agent_id, "plan_id": plan_id, "task_id": task_id, "event": event},
            )

        def finished(result: HeadlessResult) -> None:
            owned = self.unregister_agent(agent_id) is not None
            self.bus.emit(
                channel="agents",
                event_type="agent.exited",
                entity_id=agent_id,
                payload={"agent_id": agent_id, "plan_id": plan_id, "exit_code": result.exit_code},
            )
            if not owned:
                logger.info("Headless agent %s was stopped, skipping completion", agent_id)
                return
            if on_complete is not None:
                on_complete(result)

        record = AgentRecord(
            id=agent_id,
            plan_id=plan_id,
            kind=kind,
            mode="headless",
            working_dir=working_dir,
            task_id=task_id,
        )
        self.register_agent(record)
        try:
            self.headless.start(
                HeadlessAgentSpec(
                    agent_id=agent_id,
                    plan_id=plan_id,
                    working_dir=working_dir,
                    prompt=prompt,
                    task_id=task_id,
                    model=self.agent_config["model"],
                    on_event=on_event,
                    on_complete=finished,
                )
            )
        except Exception:
            self.unregister_agent(agent_id)
            raise
        return record

    def stop_agent(self, agent_id: Optional[str]) -> bool:
        if not agent_id:
            return False
        record = self.unregister_agent(agent_id)
        stopped = self.headless.stop(agent_id)
        automaton = self.terminals.for_agent(agent_id)
        if automaton is not None:
            self.terminals.close(automaton.id)
            stopped = True
        if stopped or record is not None:
            logger.info("Stopped agent %s", agent_id)
        return stopped or record is not None

    def kill_plan_agents(self, plan_id: str) -> int:
        """Stop every live agent owned by the plan; returns how many were stopped."""
        count = 0
        for record in self.agents_for_plan(plan_id):
            if self.stop_agent(record.id):
                count += 1
        self.headless.stop_all(plan_id)
        return count
