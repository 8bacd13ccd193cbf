import asyncio
import logging
import posixpath
import time
import weakref
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, TypeVar
from urllib.parse import urlsplit

import pydantic

from ..config import Settings
from ..discovery.service import DiscoveryService
from ..exceptions import (
    AttemptLimitExceeded,
    CommandRejected,
    CommandTimeout,
    HealerError,
    InvalidTransition,
    PersistenceError,
    PhaseFailure,
    RemoteConnectionError,
    ValidationError,
)
from ..execution.pool import RemoteSession
from ..execution.redaction import redact_mapping, redact_text, safe_error_message
from ..execution.service import ExecutionService
from ..ledger.service import LedgerService
from ..notifier.service import STEP_TOPIC, TRANSITION_TOPIC, Notifier
from ..playbooks import FixContext, FixPlaybook, PlaybookRegistry
from ..repository.base import Repository
from ..retry import RetryPolicy, is_retryable, retry_async
from ..schemas.environment import EnvironmentSnapshot, WordPressInfo
from ..schemas.incident import (
    EventType,
    Incident,
    IncidentEvent,
    IncidentState,
    Priority,
    TriggerType,
)
from ..schemas.ledger import Evidence, VerificationResult
from ..utils import utcnow
from ..verification.service import SiteVerifier
from .flapping import FlappingGuard
from .transitions import check_transition

logger = logging.getLogger("healer-core.orchestrator")

S = IncidentState
T = TypeVar("T")

LOG_TAIL_LINES = 200

# Paths relative to the WordPress root captured before any fix is attempted
BACKUP_TARGETS: Tuple[Tuple[str, bool], ...] = (
    ("wp-config.php", False),
    (".htaccess", False),
    (".maintenance", False),
    ("wp-content/plugins", True),
)

DIAGNOSTIC_KEYS = ("baseline:error_log", "observability:php_error_log", "observability:web_error_log")


class Orchestrator:
    """
    Incident Orchestrator.
    Responsibility: the single writer of incident state. Runs the work for the
    incident's current phase, records it in the ledger, then moves the
    incident along the transition table. One advance per incident at a time.
    """

    def __init__(
        self,
        repository: Repository,
        executor: ExecutionService,
        discovery: DiscoveryService,
        ledger: LedgerService,
        verifier: SiteVerifier,
        playbooks: PlaybookRegistry,
        notifier: Notifier,
        settings: Settings,
        flapping: Optional[FlappingGuard] = None,
    ):
        self._repo = repository
        self._executor = executor
        self._discovery = discovery
        self._ledger = ledger
        self._verifier = verifier
        self._playbooks = playbooks
        self._notifier = notifier
        self._settings = settings
        self._retry_policy = RetryPolicy.from_settings(settings)
        self._flapping = flapping or FlappingGuard.from_settings(settings)
        self._semaphore = asyncio.Semaphore(settings.MAX_CONCURRENT_INCIDENTS)
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._phases: Dict[IncidentState, Callable[[Incident], Awaitable[Incident]]] = {
            S.NEW: self._phase_new,
            S.DISCOVERY: self._phase_discovery,
            S.BASELINE: self._phase_baseline,
            S.BACKUP: self._phase_backup,
            S.OBSERVABILITY: self._phase_observability,
            S.FIX_ATTEMPT: self._phase_fix_attempt,
            S.VERIFY: self._phase_verify,
            S.ROLLBACK: self._phase_rollback,
        }

    def _lock(self, incident_id: str) -> asyncio.Lock:
        lock = self._locks.get(incident_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[incident_id] = lock
        return lock

    # ------------------------------------------------------------------ #
    #  Public operations                                                   #
    # ------------------------------------------------------------------ #

    async def create_incident(
        self,
        site_id: str,
        server_id: str,
        site_url: str,
        document_root: Optional[str] = None,
        trigger_type: TriggerType = TriggerType.MANUAL,
        priority: Priority = Priority.MEDIUM,
        max_fix_attempts: Optional[int] = None,
    ) -> Incident:
        if urlsplit(site_url).scheme not in ("http", "https"):
            raise ValidationError(f"Site URL must be http or https: {redact_text(site_url)}")
        try:
            incident = Incident(
                site_id=site_id,
                server_id=server_id,
                site_url=site_url,
                document_root=document_root,
                trigger_type=trigger_type,
                priority=priority,
                max_fix_attempts=(
                    self._settings.DEFAULT_MAX_FIX_ATTEMPTS if max_fix_attempts is None else max_fix_attempts
                ),
            )
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid incident: {e.error_count()} field error(s)") from None
        self._flapping.check(site_id)
        incident = await self._repo.create_incident(incident)
        self._flapping.record(site_id)
        await self._step(incident, "Incident created", {"trigger_type": incident.trigger_type.value})
        logger.info(f"[{incident.id}] created for site {site_id} on server {server_id}")
        return incident

    async def advance(self, incident_id: str) -> Incident:
        """
        Run the current phase's outstanding work and take the resulting
        transition. Work already recorded in the ledger is not repeated.
        """
        async with self._lock(incident_id):
            incident = await self._repo.load_incident(incident_id)
            if incident.is_terminal:
                raise InvalidTransition(
                    f"Incident {incident_id} is {incident.state.value}; no further changes are permitted",
                    from_state=incident.state.value,
                )
            if await self._is_paused(incident_id):
                logger.info(f"[{incident_id}] paused, not advancing")
                return incident

            await self._mark_phase_started(incident)
            started = time.monotonic()
            try:
                return await self._phases[incident.state](incident)
            except (InvalidTransition, PersistenceError):
                raise
            except Exception as e:
                return await self._fail_phase(incident, e, duration=time.monotonic() - started)

    async def transition(
        self,
        incident_id: str,
        to_state: IncidentState | str,
        step: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Incident:
        """Take a single legal edge without running phase work."""
        try:
            to_state = IncidentState(to_state)
        except ValueError:
            raise ValidationError(f"Unknown incident state: {to_state!r}") from None
        async with self._lock(incident_id):
            incident = await self._repo.load_incident(incident_id)
            check_transition(incident.state, to_state)
            if to_state == S.ESCALATED:
                return await self._escalate(incident, self._require_reason(reason))
            if to_state == S.FIX_ATTEMPT and incident.fix_attempts >= incident.max_fix_attempts:
                raise AttemptLimitExceeded(
                    f"Incident {incident_id} has used all {incident.max_fix_attempts} fix attempts"
                )
            fields = {"resolved_at": utcnow()} if to_state == S.FIXED else {}
            return await self._transition(
                incident, to_state, step or f"Manual transition to {to_state.value}", fields=fields
            )

    async def record_fix_attempt(
        self,
        incident_id: str,
        hypothesis: str,
        fix_type: str,
        description: str,
    ) -> Incident:
        async with self._lock(incident_id):
            incident = await self._repo.load_incident(incident_id)
            return await self._record_fix_attempt(incident, hypothesis, fix_type, description)

    async def record_verification(self, incident_id: str, result: VerificationResult) -> Incident:
        async with self._lock(incident_id):
            incident = await self._repo.load_incident(incident_id)
            return await self._record_verification(incident, result)

    async def escalate(self, incident_id: str, reason: str) -> Incident:
        async with self._lock(incident_id):
            incident = await self._repo.load_incident(incident_id)
            if incident.state not in (S.FIX_ATTEMPT, S.ROLLBACK):
                raise InvalidTransition(
                    f"Cannot escalate from {incident.state.value}; escalation is allowed "
                    f"from FIX_ATTEMPT or ROLLBACK",
                    from_state=incident.state.value,
                    to_state=S.ESCALATED.value,
                )
            return await self._escalate(incident, self._require_reason(reason))

    async def pause(self, incident_id: str, reason: str = "paused by operator") -> Incident:
        """Stop advancing after the in-flight phase, if any, completes."""
        async with self._lock(incident_id):
            incident = await self._repo.load_incident(incident_id)
            if incident.is_terminal:
                raise InvalidTransition(f"Incident {incident_id} is {incident.state.value}; cannot pause")
            if not await self._is_paused(incident_id):
                await self._append_event(incident, EventType.PAUSED, f"Paused: {reason}", {"reason": reason})
                await self._notify(STEP_TOPIC, incident, f"Paused: {reason}")
                logger.info(f"[{incident_id}] paused in {incident.state.value}")
            return incident

    async def resume(self, incident_id: str) -> Incident:
        async with self._lock(incident_id):
            incident = await self._repo.load_incident(incident_id)
            if await self._is_paused(incident_id):
                await self._append_event(incident, EventType.RESUMED, "Resumed")
                await self._notify(STEP_TOPIC, incident, "Resumed")
                logger.info(f"[{incident_id}] resumed in {incident.state.value}")
            return incident

    async def is_paused(self, incident_id: str) -> bool:
        return await self._is_paused(incident_id)

    async def run(self, incident_id: str) -> Incident:
        """Advance until the incident is terminal, paused, or the step budget is spent."""
        incident = await self._repo.load_incident(incident_id)
        steps = 0
        while not incident.is_terminal and steps < self._settings.MAX_ADVANCE_STEPS:
            if await self._is_paused(incident_id):
                break
            incident = await self.advance(incident_id)
            steps += 1
        if not incident.is_terminal and steps >= self._settings.MAX_ADVANCE_STEPS:
            logger.warning(
                f"[{incident_id}] still in {incident.state.value} after {steps} steps; will continue next run"
            )
        return incident

    async def run_many(self, incident_ids: Iterable[str]) -> Dict[str, Incident | BaseException]:
        """Run several incidents concurrently, bounded by MAX_CONCURRENT_INCIDENTS."""
        ids = list(dict.fromkeys(incident_ids))

        async def _bounded(incident_id: str) -> Incident:
            async with self._semaphore:
                return await self.run(incident_id)

        results = await asyncio.gather(*(_bounded(i) for i in ids), return_exceptions=True)
        for incident_id, result in zip(ids, results):
            if isinstance(result, BaseException):
                logger.error(f"[{incident_id}] run failed: {safe_error_message(result)}", exc_info=result)
        return dict(zip(ids, results))

    # ------------------------------------------------------------------ #
    #  State changes                                                       #
    # ------------------------------------------------------------------ #

    async def _transition(
        self,
        incident: Incident,
        to_state: IncidentState,
        step: str,
        data: Optional[Dict[str, Any]] = None,
        fields: Optional[Dict[str, Any]] = None,
        failure: bool = False,
    ) -> Incident:
        check_transition(incident.state, to_state, failure=failure)
        event = IncidentEvent(
            incident_id=incident.id,
            event_type=EventType.STATE_TRANSITION,
            phase=to_state,
            step=redact_text(step),
            data=redact_mapping({"from": incident.state.value, "to": to_state.value, **(data or {})}),
        )
        updated, stored = await self._repo.save_incident_state(
            incident.id, incident.state, to_state, fields or {}, event
        )
        logger.info(f"[{incident.id}] {incident.state.value} -> {to_state.value}: {stored.step}")
        await self._notify(
            TRANSITION_TOPIC,
            updated,
            stored.step,
            {"from_state": incident.state.value, "to_state": to_state.value, "sequence": stored.sequence},
        )
        return updated

    async def _escalate(self, incident: Incident, reason: str, failure: bool = False) -> Incident:
        reason = redact_text(reason)
        return await self._transition(
            incident,
            S.ESCALATED,
            f"Escalated: {reason}",
            data={"reason": reason},
            fields={"escalated_at": utcnow(), "escalation_reason": reason},
            failure=failure,
        )

    async def _fail_phase(
        self,
        incident: Incident,
        error: BaseException,
        duration: Optional[float] = None,
        context: Optional[str] = None,
    ) -> Incident:
        """Record the failure, then hand the incident to a human."""
        phase = incident.state.value
        if isinstance(error, PhaseFailure):
            reason = error.message
        else:
            message = error.message if isinstance(error, HealerError) else safe_error_message(error)
            reason = f"{context or f'{phase} phase failed'}: {message}"
        logger.error(f"[{incident.id}] {reason}", exc_info=not isinstance(error, HealerError))
        await self._append_event(
            incident,
            EventType.PHASE_FAILED,
            f"{phase} phase failed",
            {"error": type(error).__name__, "reason": reason, "retryable": is_retryable(error)},
            duration=duration,
        )
        return await self._escalate(incident, reason, failure=True)

    async def _record_fix_attempt(
        self,
        incident: Incident,
        hypothesis: str,
        fix_type: str,
        description: str,
    ) -> Incident:
        if incident.state != S.FIX_ATTEMPT:
            raise InvalidTransition(
                f"Fix attempts can only be recorded in FIX_ATTEMPT; incident is {incident.state.value}",
                from_state=incident.state.value,
            )
        if not hypothesis or not fix_type:
            raise ValidationError("A fix attempt needs a hypothesis and a fix type")
        attempt = incident.fix_attempts + 1
        if attempt > incident.max_fix_attempts:
            raise AttemptLimitExceeded(
                f"Incident {incident.id} has used all {incident.max_fix_attempts} fix attempts"
            )
        if not await self._ledger.list_backups(incident.id):
            raise InvalidTransition(
                "No backup artifacts recorded; a fix attempt requires at least one backup",
                from_state=incident.state.value,
            )

        step = f"Fix attempt {attempt}/{incident.max_fix_attempts}: {fix_type}"
        event = IncidentEvent(
            incident_id=incident.id,
            event_type=EventType.FIX_ATTEMPT,
            phase=S.FIX_ATTEMPT,
            step=step,
            data=redact_mapping({
                "attempt": attempt,
                "hypothesis": hypothesis,
                "fix_type": fix_type,
                "description": description,
            }),
        )
        updated, _ = await self._repo.save_incident_state(
            incident.id, S.FIX_ATTEMPT, S.FIX_ATTEMPT, {"fix_attempts": attempt}, event
        )
        logger.info(f"[{incident.id}] {step} ({hypothesis})")
        await self._notify(STEP_TOPIC, updated, step, {"hypothesis": hypothesis})
        return updated

    async def _record_verification(
        self,
        incident: Incident,
        result: VerificationResult,
        store: bool = True,
    ) -> Incident:
        if incident.state != S.VERIFY:
            raise InvalidTransition(
                f"Verification can only be recorded in VERIFY; incident is {incident.state.value}",
                from_state=incident.state.value,
            )
        attempt = incident.fix_attempts
        if store:
            result = await self._ledger.record_verification(
                incident.id, result.model_copy(update={"fix_attempt": attempt})
            )
        data = {"verification_id": result.id, "passed": result.passed, "reason": result.reason}

        if result.passed:
            return await self._transition(
                incident, S.FIXED, f"Verified healthy after {attempt} fix attempt(s)",
                data=data, fields={"resolved_at": utcnow()},
            )
        if attempt < incident.max_fix_attempts:
            remaining = incident.max_fix_attempts - attempt
            return await self._transition(
                incident, S.FIX_ATTEMPT, f"Verification failed, {remaining} attempt(s) remain: {result.reason}",
                data=data,
            )
        return await self._transition(
            incident, S.ROLLBACK, f"Verification failed after {attempt} attempt(s); rolling back",
            data=data,
        )

    @staticmethod
    def _require_reason(reason: Optional[str]) -> str:
        if not reason or not reason.strip():
            raise ValidationError("Escalation requires a reason")
        return reason.strip()

    # ------------------------------------------------------------------ #
    #  Timeline helpers                                                    #
    # ------------------------------------------------------------------ #

    async def _append_event(
        self,
        incident: Incident,
        event_type: str,
        step: str,
        data: Optional[Dict[str, Any]] = None,
        duration: Optional[float] = None,
    ) -> IncidentEvent:
        return await self._repo.append_event(IncidentEvent(
            incident_id=incident.id,
            event_type=event_type,
            phase=incident.state,
            step=redact_text(step),
            data=redact_mapping(data or {}),
            duration=duration,
        ))

    async def _step(self, incident: Incident, step: str, data: Optional[Dict[str, Any]] = None):
        await self._append_event(incident, EventType.STEP, step, data)
        await self._notify(STEP_TOPIC, incident, step, data)

    async def _notify(
        self,
        topic: str,
        incident: Incident,
        step: str,
        extra: Optional[Dict[str, Any]] = None,
    ):
        payload = {
            "incident_id": incident.id,
            "site_id": incident.site_id,
            "state": incident.state.value,
            "fix_attempts": incident.fix_attempts,
            "max_fix_attempts": incident.max_fix_attempts,
            "step": step,
            "timestamp": utcnow().isoformat(),
            **(extra or {}),
        }
        try:
            await self._notifier.publish(topic, redact_mapping(payload))
        except Exception as e:
            logger.error(f"[{incident.id}] notification on {topic} failed: {e}", exc_info=True)

    async def _last_transition_sequence(self, incident_id: str) -> int:
        transitions = await self._repo.list_timeline(incident_id, event_type=EventType.STATE_TRANSITION)
        return transitions[-1].sequence if transitions else 0

    async def _mark_phase_started(self, incident: Incident):
        since = await self._last_transition_sequence(incident.id)
        started = await self._repo.list_timeline(
            incident.id, event_type=EventType.PHASE_STARTED, phase=incident.state, after_sequence=since
        )
        if started:
            logger.info(f"[{incident.id}] resuming {incident.state.value} phase")
            return
        await self._append_event(incident, EventType.PHASE_STARTED, f"{incident.state.value} phase started")

    async def _is_paused(self, incident_id: str) -> bool:
        paused = await self._repo.list_timeline(incident_id, event_type=EventType.PAUSED)
        if not paused:
            return False
        resumed = await self._repo.list_timeline(incident_id, event_type=EventType.RESUMED)
        return not resumed or paused[-1].sequence > resumed[-1].sequence

    async def _retry(self, incident: Incident, fn: Callable[[], Awaitable[T]], description: str) -> T:
        return await retry_async(fn, self._retry_policy, description=f"[{incident.id}] {description}")

    def _recorder(self, incident: Incident):
        async def record(execution):
            return await self._ledger.record_command(incident.id, execution)
        return record

    async def _evidence(self, incident: Incident, key: str) -> Optional[Evidence]:
        return await self._ledger.find_evidence(incident.id, key)

    # ------------------------------------------------------------------ #
    #  Phase work                                                          #
    # ------------------------------------------------------------------ #

    async def _phase_new(self, incident: Incident) -> Incident:
        return await self._transition(incident, S.DISCOVERY, "Starting environment discovery")

    async def _phase_discovery(self, incident: Incident) -> Incident:
        async def work():
            async with self._executor.session(incident.server_id) as session:
                environment = await self._discover_environment(incident, session)
                wordpress = await self._discover_wordpress(incident, session, environment)
                return environment, wordpress

        environment, wordpress = await self._retry(incident, work, "discovery")
        return await self._transition(
            incident,
            S.BASELINE,
            f"Discovery complete: {environment.web_server.type} web server, "
            f"WordPress {'found at ' + wordpress.path if wordpress.found else 'not found'}",
            data={
                "web_server": environment.web_server.type,
                "control_panel": environment.control_panel.type,
                "php": environment.php.version,
                "wordpress_found": wordpress.found,
                "wordpress_version": wordpress.version,
            },
        )

    async def _discover_environment(self, incident: Incident, session: RemoteSession) -> EnvironmentSnapshot:
        key = "discovery:environment"
        existing = await self._evidence(incident, key)
        if existing is not None:
            return EnvironmentSnapshot.model_validate(existing.metadata["snapshot"])

        environment = await self._discovery.discover_environment(session, record=self._recorder(incident))
        await self._ledger.record_evidence(
            incident.id, "environment", environment.model_dump_json(), phase=S.DISCOVERY.value, key=key,
            metadata={"snapshot": environment.model_dump(mode="json")},
        )
        await self._step(incident, "Environment discovered", {
            "os": environment.os.name,
            "web_server": environment.web_server.type,
            "control_panel": environment.control_panel.type,
        })
        return environment

    async def _discover_wordpress(
        self,
        incident: Incident,
        session: RemoteSession,
        environment: EnvironmentSnapshot,
    ) -> WordPressInfo:
        key = "discovery:wordpress"
        existing = await self._evidence(incident, key)
        if existing is not None:
            return WordPressInfo.model_validate(existing.metadata["wordpress"])

        wordpress = await self._discovery.discover_wordpress(
            session,
            environment,
            document_root=incident.document_root,
            domain=urlsplit(incident.site_url).hostname,
            record=self._recorder(incident),
        )
        await self._ledger.record_evidence(
            incident.id, "wordpress", wordpress.model_dump_json(), phase=S.DISCOVERY.value, key=key,
            metadata={"wordpress": wordpress.model_dump(mode="json")},
        )
        await self._step(incident, "WordPress discovery finished", {"found": wordpress.found, "path": wordpress.path})
        return wordpress

    async def _load_discovery(self, incident: Incident) -> Tuple[EnvironmentSnapshot, WordPressInfo]:
        environment = await self._evidence(incident, "discovery:environment")
        wordpress = await self._evidence(incident, "discovery:wordpress")
        if environment is None or wordpress is None:
            raise PhaseFailure(
                f"{incident.state.value} phase failed: discovery results are missing from the ledger",
                phase=incident.state.value,
            )
        return (
            EnvironmentSnapshot.model_validate(environment.metadata["snapshot"]),
            WordPressInfo.model_validate(wordpress.metadata["wordpress"]),
        )

    async def _phase_baseline(self, incident: Incident) -> Incident:
        environment, wordpress = await self._load_discovery(incident)
        page = await self._baseline_page(incident)

        async def work():
            async with self._executor.session(incident.server_id) as session:
                await self._capture_log(
                    incident, session, "baseline:error_log", _php_log_path(environment, wordpress)
                )

        await self._retry(incident, work, "baseline log capture")
        status = page.get("status_code")
        return await self._transition(
            incident,
            S.BACKUP,
            f"Baseline captured (HTTP {status})" if page.get("reachable") else "Baseline captured (site unreachable)",
            data={"reachable": page.get("reachable"), "status_code": status},
        )

    async def _baseline_page(self, incident: Incident) -> Dict[str, Any]:
        key = "baseline:page"
        existing = await self._evidence(incident, key)
        if existing is not None:
            return existing.metadata

        try:
            snapshot = await self._verifier.capture(incident.site_url)
            metadata = {"reachable": True, **snapshot.as_metadata()}
            content = snapshot.body
        except (CommandTimeout, RemoteConnectionError) as e:
            # An unreachable site is a symptom to record, not a phase failure
            metadata = {"reachable": False, "url": incident.site_url, "error": e.message}
            content = ""
        await self._ledger.record_evidence(
            incident.id, "page_snapshot", content, phase=S.BASELINE.value, key=key, metadata=metadata
        )
        return metadata

    async def _capture_log(
        self,
        incident: Incident,
        session: RemoteSession,
        key: str,
        path: Optional[str],
    ) -> Evidence:
        existing = await self._evidence(incident, key)
        if existing is not None:
            return existing

        if path is None:
            return await self._ledger.record_evidence(
                incident.id, "log_tail", "", phase=incident.state.value, key=key,
                metadata={"path": None, "available": False},
            )
        try:
            execution = await self._ledger.run_template(
                incident.id, session, "tail -n {{lines}} {{path}}", lines=LOG_TAIL_LINES, path=path
            )
        except CommandRejected as e:
            logger.warning(f"[{incident.id}] not reading log {path}: {e.message}")
            return await self._ledger.record_evidence(
                incident.id, "log_tail", "", phase=incident.state.value, key=key,
                metadata={"path": path, "available": False, "rejected": e.reason},
            )
        return await self._ledger.record_evidence(
            incident.id, "log_tail", execution.stdout, phase=incident.state.value, key=key,
            metadata={"path": path, "available": execution.ok, "exit_code": execution.exit_code},
        )

    async def _phase_backup(self, incident: Incident) -> Incident:
        _, wordpress = await self._load_discovery(incident)
        if not wordpress.found:
            raise PhaseFailure(
                "WordPress installation not found; nothing can be backed up", phase=S.BACKUP.value
            )

        async def work():
            async with self._executor.session(incident.server_id) as session:
                for relative, directory in BACKUP_TARGETS:
                    await self._backup_target(
                        incident, session, posixpath.join(wordpress.path, relative), directory
                    )

        await self._retry(incident, work, "backup capture")
        backups = await self._ledger.list_backups(incident.id)
        if not backups:
            raise PhaseFailure(
                "No backup artifacts could be captured; refusing to attempt fixes", phase=S.BACKUP.value
            )
        return await self._transition(
            incident,
            S.OBSERVABILITY,
            f"Captured {len(backups)} backup artifact(s)",
            data={"backups": [b.original_path for b in backups]},
        )

    async def _backup_target(self, incident: Incident, session: RemoteSession, path: str, directory: bool):
        key = f"backup:{path}"
        if await self._evidence(incident, key) is not None:
            return
        if directory:
            backup = await self._ledger.capture_directory_backup(incident.id, session, path)
        else:
            backup = await self._ledger.capture_file_backup(incident.id, session, path)
        await self._ledger.record_evidence(
            incident.id, "backup", backup.checksum if backup else "", phase=S.BACKUP.value, key=key,
            metadata={"path": path, "captured": backup is not None, "backup_id": backup.id if backup else None},
        )

    async def _phase_observability(self, incident: Incident) -> Incident:
        environment, wordpress = await self._load_discovery(incident)

        async def work():
            async with self._executor.session(incident.server_id) as session:
                await self._capture_log(
                    incident, session, "observability:php_error_log", _php_log_path(environment, wordpress)
                )
                await self._capture_log(
                    incident, session, "observability:web_error_log", environment.web_server.error_log
                )
                await self._capture_disk_usage(incident, session, wordpress.path or "/")

        await self._retry(incident, work, "diagnostics collection")
        return await self._transition(incident, S.FIX_ATTEMPT, "Diagnostics collected; starting fix attempts")

    async def _capture_disk_usage(self, incident: Incident, session: RemoteSession, path: str):
        key = "observability:disk_usage"
        if await self._evidence(incident, key) is not None:
            return
        execution = await self._ledger.run_template(incident.id, session, "df -h {{path}}", path=path)
        await self._ledger.record_evidence(
            incident.id, "disk_usage", execution.stdout, phase=S.OBSERVABILITY.value, key=key,
            metadata={"path": path, "exit_code": execution.exit_code},
        )

    async def _phase_fix_attempt(self, incident: Incident) -> Incident:
        environment, wordpress = await self._load_discovery(incident)
        if await self._current_attempt(incident) is None and incident.fix_attempts >= incident.max_fix_attempts:
            return await self._escalate(
                incident, f"Fix attempt cap of {incident.max_fix_attempts} reached without a verified fix"
            )

        async def work():
            async with self._executor.session(incident.server_id) as session:
                return await self._attempt_fix(incident, session, environment, wordpress)

        applied = await self._retry(incident, work, "fix attempt")
        if applied is None:
            return await self._no_fix_available(incident)
        attempt, fix_type = applied
        incident = await self._repo.load_incident(incident.id)
        return await self._transition(
            incident,
            S.VERIFY,
            f"Fix attempt {attempt} applied ({fix_type}); verifying",
            data={"attempt": attempt, "playbook": fix_type},
        )

    async def _attempt_fix(
        self,
        incident: Incident,
        session: RemoteSession,
        environment: EnvironmentSnapshot,
        wordpress: WordPressInfo,
    ) -> Optional[Tuple[int, str]]:
        ctx = await self._fix_context(incident, session, environment, wordpress)
        current = await self._current_attempt(incident)
        if current is None:
            playbook = await self._playbooks.select(ctx, await self._attempted_playbooks(incident))
            if playbook is None:
                return None
            updated = await self._record_fix_attempt(
                incident, playbook.hypothesis(ctx), playbook.name, playbook.description
            )
            attempt = updated.fix_attempts
            ctx.incident = updated
        else:
            attempt = current.data["attempt"]
            playbook = self._playbooks.get(current.data["fix_type"])
            if playbook is None:
                await self._record_external_fix(incident, current)
                return attempt, current.data["fix_type"]
        ctx.attempt = attempt
        await self._apply_fix(incident, ctx, playbook, attempt)
        return attempt, playbook.name

    async def _record_external_fix(self, incident: Incident, current: IncidentEvent):
        """An operator recorded an attempt no playbook owns; they applied it, so go straight to verification."""
        attempt = current.data["attempt"]
        key = f"fix:{attempt}:apply"
        if await self._evidence(incident, key) is not None:
            return
        fix_type = current.data["fix_type"]
        description = current.data.get("description") or fix_type
        await self._ledger.record_evidence(
            incident.id, "fix_outcome", description, phase=S.FIX_ATTEMPT.value, key=key,
            metadata={
                "playbook": fix_type,
                "attempt": attempt,
                "applied": True,
                "external": True,
                "changes": [],
                "altered": False,
                "details": {},
            },
        )
        await self._step(incident, f"{fix_type}: applied outside the engine; verifying", {
            "attempt": attempt,
            "external": True,
        })

    async def _apply_fix(self, incident: Incident, ctx: FixContext, playbook: FixPlaybook, attempt: int):
        key = f"fix:{attempt}:apply"
        if await self._evidence(incident, key) is not None:
            return
        outcome = await playbook.apply(ctx)
        altered = [await self._ledger.change_altered_content(change) for change in outcome.changes]
        await self._ledger.record_evidence(
            incident.id, "fix_outcome", outcome.description, phase=S.FIX_ATTEMPT.value, key=key,
            metadata={
                "playbook": playbook.name,
                "attempt": attempt,
                "applied": outcome.applied,
                "changes": [change.id for change in outcome.changes],
                "altered": any(altered),
                "details": outcome.details,
            },
        )
        await self._step(incident, f"{playbook.name}: {outcome.description}", {
            "attempt": attempt,
            "applied": outcome.applied,
            "altered": any(altered),
        })

    async def _fix_context(
        self,
        incident: Incident,
        session: RemoteSession,
        environment: EnvironmentSnapshot,
        wordpress: WordPressInfo,
    ) -> FixContext:
        diagnostics: List[str] = []
        for key in DIAGNOSTIC_KEYS:
            evidence = await self._evidence(incident, key)
            if evidence is not None and evidence.content:
                diagnostics.append(evidence.content)
        verifications = await self._repo.list_verifications(incident.id)
        if verifications:
            diagnostics.append(verifications[-1].reason)
        baseline = await self._evidence(incident, "baseline:page")
        return FixContext(
            incident=incident,
            session=session,
            attempt=incident.fix_attempts + 1,
            environment=environment,
            wordpress=wordpress,
            executor=self._executor,
            ledger=self._ledger,
            diagnostics="\n".join(diagnostics),
            baseline=baseline.metadata if baseline is not None else {},
        )

    async def _current_attempt(self, incident: Incident) -> Optional[IncidentEvent]:
        """The fix attempt already recorded for this FIX_ATTEMPT cycle, if any."""
        since = await self._last_transition_sequence(incident.id)
        events = await self._repo.list_timeline(incident.id, event_type=EventType.FIX_ATTEMPT, after_sequence=since)
        return events[-1] if events else None

    async def _attempted_playbooks(self, incident: Incident) -> Set[str]:
        events = await self._repo.list_timeline(incident.id, event_type=EventType.FIX_ATTEMPT)
        return {e.data.get("fix_type") for e in events}

    async def _no_fix_available(self, incident: Incident) -> Incident:
        reason = "No applicable automated fix for the observed symptoms"
        changes = await self._repo.list_file_changes(incident.id)
        if changes:
            # Rolled back here rather than via ROLLBACK: that edge is only legal from VERIFY
            await self._step(
                incident,
                f"No applicable fix left; rolling back {len(changes)} change(s) from earlier attempts",
                {"changes": len(changes), "inline_rollback": True},
            )
            try:
                async with self._executor.session(incident.server_id) as session:
                    await self._ledger.execute_rollback(incident.id, session)
            except Exception as e:
                return await self._fail_phase(incident, e, context="Rollback failed, manual intervention required")
            reason += f"; {len(changes)} change(s) from earlier attempts rolled back"
        return await self._escalate(incident, reason)

    async def _phase_verify(self, incident: Incident) -> Incident:
        attempt = incident.fix_attempts
        existing = [v for v in await self._repo.list_verifications(incident.id) if v.fix_attempt == attempt]
        if existing:
            return await self._record_verification(incident, existing[-1], store=False)

        baseline = await self._evidence(incident, "baseline:page")
        reference = baseline.metadata if baseline is not None and baseline.metadata.get("reachable") else None
        try:
            snapshot = await self._retry(incident, lambda: self._verifier.capture(incident.site_url), "site verification")
        except (CommandTimeout, RemoteConnectionError) as e:
            result = self._verifier.unreachable(incident.site_url, e)
        else:
            result = self._verifier.evaluate(snapshot, baseline=reference)
        return await self._record_verification(incident, result)

    async def _phase_rollback(self, incident: Incident) -> Incident:
        # Never retried: a failed revert goes straight to a human
        try:
            async with self._executor.session(incident.server_id) as session:
                restored = await self._ledger.execute_rollback(incident.id, session)
        except Exception as e:
            return await self._fail_phase(incident, e, context="Rollback failed, manual intervention required")

        changes = await self._repo.list_file_changes(incident.id)
        await self._step(incident, f"Rolled back {len(changes)} change(s)", {"restored": len(restored)})
        return await self._escalate(
            incident,
            f"Automated fixes exhausted after {incident.fix_attempts} attempt(s); "
            f"{len(changes)} change(s) rolled back",
        )


def _php_log_path(environment: EnvironmentSnapshot, wordpress: WordPressInfo) -> Optional[str]:
    if environment.php.error_log:
        return environment.php.error_log
    if wordpress.found and wordpress.path:
        return posixpath.join(wordpress.path, "wp-content", "debug.log")
    return None
