"""
Main Daemon Module for Tailscale / BIRD Protocol Synchronisation

This module keeps a BIRD protocol (by default ``tailscale``) enabled while this
node is a Tailscale primary subnet router and disabled otherwise.

Control Loop Flow:
    1. Generate correlation ID for traceability
    2. Poll the Tailscale status command for ``Self.PrimaryRoutes``
    3. Compare the signal with the remembered protocol state
    4. If they differ, open a BIRD control session and enable/disable the protocol
    5. Advance the remembered state only when the control call succeeded
    6. Sleep until the next check interval (or until shutdown is requested)

State Model (see state.py):
    UNKNOWN  -> ENABLED | DISABLED   (first successful control call)
    ENABLED <-> DISABLED

Failure Policy:
    - Status command failure or unparseable output: the signal is treated as
      False. An indeterminate status never keeps a stale primary-router claim
      enabled in BIRD.
    - Control call failure: the remembered state is left untouched, so the
      next tick retries the same transition. There is no other retry or backoff.
    - Neither kind of failure stops the loop. Optionally the loop stops after
      MAX_CONSECUTIVE_CONTROL_FAILURES failed control calls in a row so a
      supervisor can restart the process.

Flapping:
    There is no hysteresis beyond the check interval. A signal that alternates
    every tick produces one control call per tick.

Signal Handling:
    - SIGTERM/SIGINT set ``shutdown_event``; the loop checks it before each
      tick and while sleeping. A tick in progress is allowed to finish, so a
      transition is never half-applied.

Usage:
    from .daemon import startup, run_loop
    from .config import Config

    cfg = Config()
    reconciler = startup(cfg)
    run_loop(cfg, reconciler)
"""

import time
import threading
import logging
import signal
import shutil
import uuid
from typing import Optional
from .config import Config, validate_configuration
from .logging_setup import resolve_logger_name
from .structured_events import StructuredEventLogger, EventType, ActionResult
from .status import StatusOracle, StatusOracleError
from .bird import BirdControlClient, BirdControlError, BirdCommandError
from .state import ReconcilerState, ControlVerb, VERB_RESULT_STATE, determine_control_verb

# Set by signal handlers and checked by the main loop
shutdown_event = threading.Event()

SHUTDOWN_GRACEFUL = "graceful_shutdown"
SHUTDOWN_RUN_ONCE = "run_once"
SHUTDOWN_CONTROL_FAILURES = "control_failure_limit"


def signal_handler(signum: int, frame) -> None:
    """
    Signal handler for graceful daemon shutdown.

    Only sets ``shutdown_event``; the main loop finishes its current tick and exits.
    """
    logger = logging.getLogger(resolve_logger_name())
    signal_names = {
        signal.SIGTERM: 'SIGTERM',
        signal.SIGINT: 'SIGINT'
    }
    signal_name = signal_names.get(signum, f'Signal-{signum}')
    logger.info(f"Received {signal_name}, initiating graceful shutdown...")
    shutdown_event.set()


def setup_signal_handlers() -> None:
    """Register signal_handler for SIGTERM and SIGINT."""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)


class Reconciler:
    """
    The reconciliation state machine.

    Owns the remembered ReconcilerState and performs one poll/compare/act cycle
    per call to tick(). It holds no timer; run_loop() drives it.

    Attributes:
        oracle: Object with ``poll() -> bool`` raising StatusOracleError on failure.
        control_client: Object with ``connect()`` returning a session context
            manager that offers ``enable(protocol)`` and ``disable(protocol)``.
        protocol (str): BIRD protocol name being toggled.
        passive (bool): Decide and log, but never issue control verbs.
        state (ReconcilerState): Last successfully applied state.
        consecutive_control_failures (int): Failed control calls since the last success.
    """

    def __init__(self,
                 oracle: StatusOracle,
                 control_client: BirdControlClient,
                 protocol: str,
                 structured_logger: Optional[StructuredEventLogger] = None,
                 passive: bool = False):
        self.oracle = oracle
        self.control_client = control_client
        self.protocol = protocol
        self.passive = passive
        self.structured_logger = structured_logger or StructuredEventLogger(resolve_logger_name())
        self.logger = logging.getLogger(resolve_logger_name())

        self.state = ReconcilerState.UNKNOWN
        self.consecutive_control_failures = 0

    def poll_signal(self) -> bool:
        """
        Poll the status source once.

        Any StatusOracleError is logged and mapped to False: while status is
        unknown the node must not keep claiming primary routes.
        """
        start = time.time()
        command = getattr(self.oracle, "command", "")
        try:
            primary_router = self.oracle.poll()
        except StatusOracleError as e:
            duration_ms = int((time.time() - start) * 1000)
            self.logger.warning(f"Status poll failed ({e.kind}): {e}; treating node as not primary")
            self.structured_logger.log_status_poll(
                command=command,
                primary_router=None,
                result=ActionResult.FAILURE,
                failure_kind=e.kind,
                duration_ms=duration_ms,
                error_message=str(e)
            )
            return False

        self.structured_logger.log_status_poll(
            command=command,
            primary_router=primary_router,
            result=ActionResult.SUCCESS,
            duration_ms=int((time.time() - start) * 1000)
        )
        return primary_router

    def apply(self, verb: ControlVerb, primary_router: bool) -> bool:
        """
        Issue a control verb on a fresh BIRD session.

        The remembered state advances only if the call succeeded.

        Returns:
            bool: True on success, False on a control failure.
        """
        start = time.time()
        control_target = getattr(self.control_client, "socket_path", "")
        try:
            with self.control_client.connect() as session:
                if verb is ControlVerb.ENABLE:
                    reply = session.enable(self.protocol)
                else:
                    reply = session.disable(self.protocol)
        except BirdControlError as e:
            self.consecutive_control_failures += 1
            self.logger.error(f"Failed to {verb.value} BIRD protocol '{self.protocol}' "
                              f"(state stays {self.state.value}, "
                              f"consecutive failures: {self.consecutive_control_failures}): {e}")
            self.structured_logger.log_protocol_control(
                socket_path=control_target,
                protocol=self.protocol,
                verb=verb.value,
                result=ActionResult.FAILURE,
                reply_code=e.code if isinstance(e, BirdCommandError) else None,
                duration_ms=int((time.time() - start) * 1000),
                error_message=str(e)
            )
            return False

        old_state = self.state
        self.state = VERB_RESULT_STATE[verb]
        self.consecutive_control_failures = 0

        self.structured_logger.log_protocol_control(
            socket_path=control_target,
            protocol=self.protocol,
            verb=verb.value,
            result=ActionResult.SUCCESS,
            reply_code=getattr(reply, "code", None),
            duration_ms=int((time.time() - start) * 1000)
        )
        self.structured_logger.log_state_transition(
            old_state=old_state.value,
            new_state=self.state.value,
            primary_router=primary_router,
            protocol=self.protocol
        )
        self.logger.info(f"BIRD protocol '{self.protocol}' {self.state.value} "
                         f"(was {old_state.value}, primary router: {primary_router})")
        return True

    def tick(self) -> ActionResult:
        """
        Run one reconciliation cycle.

        Returns:
            ActionResult: NO_CHANGE when BIRD already matches the signal,
            SKIPPED in passive mode, otherwise SUCCESS or FAILURE of the control call.
        """
        loop_start = time.time()
        correlation_id = f"rc-{int(loop_start)}-{str(uuid.uuid4())[:8]}"
        self.structured_logger.set_correlation_id(correlation_id)
        try:
            return self._reconcile(correlation_id, loop_start)
        finally:
            self.structured_logger.set_correlation_id(None)

    def _reconcile(self, correlation_id: str, loop_start: float) -> ActionResult:
        previous_state = self.state

        primary_router = self.poll_signal()
        verb = determine_control_verb(self.state, primary_router)

        if verb is None:
            result = ActionResult.NO_CHANGE
            self.logger.debug(f"[{correlation_id}] Protocol '{self.protocol}' already "
                              f"{self.state.value}, nothing to do")
        elif self.passive:
            result = ActionResult.SKIPPED
            self.logger.info(f"[{correlation_id}] PASSIVE MODE: would {verb.value} BIRD protocol "
                             f"'{self.protocol}' (primary router: {primary_router})")
        else:
            self.logger.info(f"[{correlation_id}] Primary router: {primary_router}, "
                             f"state: {self.state.value} -> {verb.value} '{self.protocol}'")
            result = ActionResult.SUCCESS if self.apply(verb, primary_router) else ActionResult.FAILURE

        self.structured_logger.log_event({
            "event_type": EventType.RECONCILE_CYCLE.value,
            "timestamp": time.time(),
            "result": result.value,
            "component": "daemon",
            "operation": "reconcile_cycle",
            "details": {
                "primary_router": primary_router,
                "previous_state": previous_state.value,
                "current_state": self.state.value,
                "planned_verb": verb.value if verb else None,
                "passive_mode": self.passive,
                "consecutive_control_failures": self.consecutive_control_failures
            },
            "duration_ms": int((time.time() - loop_start) * 1000)
        })
        return result


def run_loop(cfg: Config, reconciler: Reconciler, stop_event: threading.Event = None) -> str:
    """
    Drive the reconciler every cfg.check_interval seconds until stopped.

    The stop event is checked before every tick and the sleep between ticks
    waits on it, so shutdown is prompt but never interrupts a tick. Unexpected
    exceptions inside a tick are logged and the loop carries on.

    Args:
        cfg (Config): Validated configuration.
        reconciler (Reconciler): State machine to drive.
        stop_event (threading.Event): Shutdown signal; defaults to shutdown_event.

    Returns:
        str: Why the loop ended (SHUTDOWN_GRACEFUL, SHUTDOWN_RUN_ONCE or
        SHUTDOWN_CONTROL_FAILURES).
    """
    if stop_event is None:
        stop_event = shutdown_event

    logger = logging.getLogger(resolve_logger_name())
    structured_logger = reconciler.structured_logger

    logger.info(f"Daemon main loop starting with {cfg.check_interval}s check interval")
    logger.info(f"Passive mode: {'ENABLED - monitoring only, no BIRD changes' if reconciler.passive else 'DISABLED - BIRD changes enabled'}")
    logger.info(f"Managing BIRD protocol '{reconciler.protocol}' via {cfg.bird_socket}")

    structured_logger.log_event({
        "event_type": EventType.DAEMON_LIFECYCLE.value,
        "timestamp": time.time(),
        "result": ActionResult.SUCCESS.value,
        "component": "daemon",
        "operation": "startup",
        "details": {
            "check_interval": cfg.check_interval,
            "passive_mode": reconciler.passive,
            "run_once": cfg.run_once,
            "protocol": reconciler.protocol,
            "bird_socket": cfg.bird_socket,
            "status_command": cfg.status_command,
            "max_consecutive_control_failures": cfg.max_consecutive_control_failures
        }
    })

    reason = SHUTDOWN_GRACEFUL
    started = time.time()
    ticks = 0

    while not stop_event.is_set():
        loop_start = time.time()
        try:
            reconciler.tick()
        except Exception as e:
            logger.exception(f"Unexpected error in reconciliation tick: {e}")
            structured_logger.log_event({
                "event_type": "daemon_error",
                "timestamp": time.time(),
                "result": ActionResult.FAILURE.value,
                "component": "daemon",
                "operation": "reconcile_cycle",
                "details": {"state": reconciler.state.value},
                "error_message": str(e)
            })
        ticks += 1

        if cfg.run_once:
            reason = SHUTDOWN_RUN_ONCE
            break

        limit = cfg.max_consecutive_control_failures
        if limit and reconciler.consecutive_control_failures >= limit:
            logger.critical(f"Reached {reconciler.consecutive_control_failures} consecutive BIRD control "
                            f"failures (limit {limit}), exiting so the supervisor can restart the daemon")
            reason = SHUTDOWN_CONTROL_FAILURES
            break

        loop_duration = time.time() - loop_start
        sleep_time = max(0, cfg.check_interval - loop_duration)
        if sleep_time == 0:
            logger.warning(f"Tick took {loop_duration:.2f}s, longer than check interval {cfg.check_interval}s")

        if stop_event.wait(sleep_time):
            logger.info("Shutdown signal received during sleep, exiting main loop")
            break

    structured_logger.log_event({
        "event_type": EventType.DAEMON_LIFECYCLE.value,
        "timestamp": time.time(),
        "result": ActionResult.SUCCESS.value,
        "component": "daemon",
        "operation": "shutdown",
        "details": {
            "reason": reason,
            "final_state": reconciler.state.value,
            "ticks": ticks,
            "total_uptime_seconds": int(time.time() - started)
        }
    })
    logger.info(f"Main daemon loop exited ({reason}), final state: {reconciler.state.value}")
    return reason


def startup(cfg: Config) -> Reconciler:
    """
    Validate the environment and build the reconciler.

    Invalid configuration is the only fatal condition. A missing status binary
    or an unreachable BIRD socket is reported but tolerated: both can appear
    after the daemon starts and the loop already treats them as per-tick failures.

    Returns:
        Reconciler: Ready-to-run state machine starting in UNKNOWN.

    Raises:
        SystemExit: Exit code 1 if configuration validation fails.
    """
    logger = logging.getLogger(resolve_logger_name())
    structured_logger = StructuredEventLogger(resolve_logger_name())

    logger.info("Daemon startup initiated - validating configuration")

    errors = validate_configuration(cfg)
    if errors:
        logger.error("Configuration validation failed with the following errors:")
        for i, error in enumerate(errors, 1):
            logger.error(f"  {i}. {error}")

        structured_logger.log_event({
            "event_type": EventType.DAEMON_LIFECYCLE.value,
            "timestamp": time.time(),
            "result": ActionResult.FAILURE.value,
            "component": "daemon",
            "operation": "config_validation",
            "details": {
                "validation_errors": errors,
                "error_count": len(errors)
            },
            "error_message": f"Configuration validation failed with {len(errors)} errors"
        })

        logger.critical("Cannot start daemon with invalid configuration. Please fix the above errors.")
        raise SystemExit(1)

    logger.info("Configuration validation passed")

    oracle = StatusOracle(cfg.status_argv, timeout=cfg.status_timeout)
    if shutil.which(oracle.argv[0]) is None:
        logger.warning(f"Status command '{oracle.argv[0]}' not found on PATH; "
                       "polls will fail and the protocol will be disabled until it appears")

    control_client = BirdControlClient(cfg.bird_socket, timeout=cfg.bird_timeout)
    try:
        version = control_client.probe()
        logger.info(f"BIRD control socket {cfg.bird_socket} reachable ({version})")
    except BirdControlError as e:
        logger.warning(f"BIRD control socket not usable yet: {e}; control calls will be retried every tick")

    try:
        setup_signal_handlers()
        logger.info("Signal handlers registered (SIGTERM, SIGINT)")
    except Exception as e:
        logger.warning(f"Failed to register signal handlers: {e}")
        logger.warning("Daemon will still function but may not shutdown gracefully")

    return Reconciler(
        oracle=oracle,
        control_client=control_client,
        protocol=cfg.bird_protocol,
        structured_logger=structured_logger,
        passive=cfg.run_passive
    )
