import os
import shlex
from dataclasses import dataclass
from dotenv import load_dotenv
from .bird import PROTOCOL_NAME_RE
from .logging_setup import resolve_logger_name

# Load environment variables from a .env file into the runtime environment
load_dotenv()


@dataclass
class Config:
    """
    Central configuration class that loads and stores all environment-defined
    parameters for the sync daemon.

    All fields are populated from environment variables and type-cast as needed.

    Attributes:
        Logging:
            - logger_name: Name the daemon logs as.
            - log_level: Log verbosity (e.g., DEBUG, INFO, WARNING).
            - log_file: Path to optional rotating log file.
            - log_max_bytes: Log file size before rotation.
            - log_backup_count: Number of rotated backups to retain.
            - enable_gcp_logging: Ship logs to Google Cloud Logging as well.
            - enable_structured_console: Output JSON to console for structured events.
            - enable_structured_file: Output JSON lines to a separate structured log file.
            - structured_log_file: Path to the structured JSON lines file.

        Status source:
            - status_command: Command producing the Tailscale status JSON.
            - status_timeout: Seconds before the status command is killed.

        BIRD control channel:
            - bird_socket: Path of the BIRD control socket.
            - bird_protocol: Name of the BIRD protocol to enable/disable.
            - bird_timeout: Seconds allowed for one control session.

        Runtime Control:
            - check_interval: Seconds between reconciliation ticks.
            - run_passive: When TRUE, decisions are logged but no control verb is sent.
            - run_once: When TRUE, run a single tick and exit.
            - max_consecutive_control_failures: Stop the loop after this many
              failed control calls in a row (0 disables the limit).
    """
    # Logging
    logger_name: str = resolve_logger_name()
    log_level: str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_file: str | None = os.getenv('LOG_FILE', '/var/log/tailscale_bird_sync.log') or None
    log_max_bytes: int = int(os.getenv('LOG_MAX_BYTES', 10 * 1024 * 1024))
    log_backup_count: int = int(os.getenv('LOG_BACKUP_COUNT', 5))
    enable_gcp_logging: bool = os.getenv('ENABLE_GCP_LOGGING', 'false').lower() == 'true'

    enable_structured_console: bool = os.getenv('ENABLE_STRUCTURED_CONSOLE', 'false').lower() == 'true'
    enable_structured_file: bool = os.getenv('ENABLE_STRUCTURED_FILE', 'false').lower() == 'true'
    structured_log_file: str | None = os.getenv('STRUCTURED_LOG_FILE', '/var/log/tailscale_bird_sync_structured.jsonl')

    # Tailscale status source
    status_command: str = os.getenv('STATUS_COMMAND', 'tailscale status --json --self')
    status_timeout: float = float(os.getenv('STATUS_TIMEOUT_SECONDS', 10))

    # BIRD control channel
    bird_socket: str = os.getenv('BIRD_CONTROL_SOCKET', '/run/bird/bird.ctl')
    bird_protocol: str = os.getenv('BIRD_PROTOCOL', 'tailscale')
    bird_timeout: float = float(os.getenv('BIRD_TIMEOUT_SECONDS', 5))

    # Control loop
    check_interval: int = int(os.getenv('CHECK_INTERVAL_SECONDS', 15))
    run_passive: bool = os.getenv('RUN_PASSIVE', 'false').lower() == 'true'
    run_once: bool = os.getenv('RUN_ONCE', 'false').lower() == 'true'
    max_consecutive_control_failures: int = int(os.getenv('MAX_CONSECUTIVE_CONTROL_FAILURES', 0))

    @property
    def status_argv(self) -> list[str]:
        """The status command split into an argument vector (no shell involved)."""
        return shlex.split(self.status_command)


def validate_configuration(cfg: Config) -> list[str]:
    """
    Validates the loaded configuration for correctness and consistency.

    This includes:
    - Validating numeric ranges of environment-provided numbers.
    - Checking that no external call can outlive one check interval.
    - Checking the BIRD protocol name and the status command.
    - Making sure the structured log directory exists or can be created.

    Args:
        cfg (Config): Parsed and populated configuration object.

    Returns:
        list[str]: A list of human-readable error strings. Empty list means validation passed.
    """
    errors: list[str] = []

    numeric_ranges = {
        'CHECK_INTERVAL_SECONDS': (1, 3600),
        'STATUS_TIMEOUT_SECONDS': (1, 300),
        'BIRD_TIMEOUT_SECONDS': (1, 300),
        'MAX_CONSECUTIVE_CONTROL_FAILURES': (0, 1000),
        'LOG_MAX_BYTES': (1024, 1073741824),  # 1 KB to 1 GB
        'LOG_BACKUP_COUNT': (1, 100),
    }

    for var, (mn, mx) in numeric_ranges.items():
        raw = os.getenv(var)
        if raw:
            try:
                val = float(raw)
                if val < mn or val > mx:
                    errors.append(f"{var} must be between {mn} and {mx}, got {val}")
            except ValueError:
                errors.append(f"{var} must be numeric, got '{raw}'")

    # A hung status command or control session must never stall the loop past one interval
    if cfg.status_timeout > cfg.check_interval:
        errors.append(f"STATUS_TIMEOUT_SECONDS ({cfg.status_timeout}) must not exceed "
                      f"CHECK_INTERVAL_SECONDS ({cfg.check_interval})")
    if cfg.bird_timeout > cfg.check_interval:
        errors.append(f"BIRD_TIMEOUT_SECONDS ({cfg.bird_timeout}) must not exceed "
                      f"CHECK_INTERVAL_SECONDS ({cfg.check_interval})")

    if not PROTOCOL_NAME_RE.match(cfg.bird_protocol or ''):
        errors.append(f"Invalid BIRD_PROTOCOL '{cfg.bird_protocol}': must be a BIRD symbol "
                      "(letters, digits and underscores, not starting with a digit)")

    if not cfg.bird_socket:
        errors.append("BIRD_CONTROL_SOCKET must not be empty")

    try:
        if not cfg.status_argv:
            errors.append("STATUS_COMMAND must not be empty")
    except ValueError as e:
        errors.append(f"Invalid STATUS_COMMAND '{cfg.status_command}': {e}")

    if cfg.enable_structured_file and cfg.structured_log_file:
        structured_log_dir = os.path.dirname(cfg.structured_log_file)
        if structured_log_dir and not os.path.exists(structured_log_dir):
            try:
                os.makedirs(structured_log_dir, exist_ok=True)
            except Exception as e:
                errors.append(f"Cannot create structured log directory {structured_log_dir}: {e}")

    return errors
