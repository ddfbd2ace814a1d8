# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "boto3",
#     "pyyaml",
#     "requests",
# ]
# ///

#!/usr/bin/env python3
#
# -----------------------------------------------------------------------------
# restic_backup.py
#
# A guarded, scheduled restic backup run for a single host.
#
# Features:
# - Refuses to run twice at once via a non-blocking flock on a lock file.
# - Skips the run when the host is on battery (configurable).
# - Pulls repository and AWS credentials from the macOS keychain and hands
#   them to restic through the child environment only.
# - Logs every line restic prints, stderr as errors, stdout as info.
# - Optionally forgets and prunes old snapshots with a fixed keep policy.
# - Pushes duration and count metrics to AWS CloudWatch.
# - Optionally posts the outcome to a Discord webhook.
#
# Requirements:
# - Python 3.11+
# - restic, security (macOS keychain CLI), pmset
# - boto3, pyyaml, requests
# -----------------------------------------------------------------------------

import argparse
import datetime
import fcntl
import logging
import logging.handlers
import os
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, TypedDict

import boto3
import requests
import yaml
from botocore.exceptions import BotoCoreError, ClientError

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------

DEFAULT_CONFIG_PATH = Path.home() / ".restic_backup" / "config.yaml"

# --- Timeouts (seconds) ---
RUN_TIMEOUT = 30 * 60
SECRET_TIMEOUT = 60
POWER_CHECK_TIMEOUT = 30
DISCORD_TIMEOUT = 10

# --- Log rotation ---
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 3

# --- Keychain accounts and the environment variables they feed ---
SECRET_ACCOUNTS = {
    "region": ("aws-region", "AWS_DEFAULT_REGION"),
    "access_key_id": ("aws-access-key-id", "AWS_ACCESS_KEY_ID"),
    "secret_access_key": ("aws-secret-access-key", "AWS_SECRET_ACCESS_KEY"),
    "repository": ("repository", "RESTIC_REPOSITORY"),
    "password": ("password", "RESTIC_PASSWORD"),
}

# --- Retention ---
FORGET_ARGS: tuple[str, ...] = (
    "forget",
    "-q",
    "--prune",
    "--keep-hourly",
    "4",
    "--keep-daily",
    "7",
    "--keep-weekly",
    "5",
    "--keep-monthly",
    "12",
    "--keep-yearly",
    "5",
    "--keep-tag",
    "nodelete",
)

# --- Metrics ---
METRICS_NAMESPACE = "ResticBackup"
METRICS_DIMENSION = "Environment"

# --- Discord embed colors ---
COLOR_GREEN = 65280
COLOR_RED = 16711680

# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------


class BackupError(Exception):
    """Base class for every failure the backup run knows how to classify."""


class SettingsError(BackupError):
    """The configuration file is missing, unreadable or malformed."""


class LockError(BackupError):
    """The lock file could not be opened or locked."""


class LockBusy(BackupError):
    """Another process already holds the instance lock."""


class PowerCheckError(BackupError):
    """The power status command failed or is not installed."""


class SecretError(BackupError):
    """A keychain secret could not be retrieved."""


# -----------------------------------------------------------------------------
# Type Definitions
# -----------------------------------------------------------------------------


class Dimension(TypedDict):
    Name: str
    Value: str


class MetricDatum(TypedDict):
    """One entry of the CloudWatch PutMetricData ``MetricData`` list."""

    MetricName: str
    Dimensions: list[Dimension]
    Timestamp: datetime.datetime
    Unit: str
    Value: float


@dataclass(frozen=True)
class RunSettings:
    """Static settings for one run, loaded once before anything else happens.

    Relative file names are resolved against ``backup_directory`` through the
    ``*_path`` properties; the engine executable is looked up as given.
    """

    backup_directory: Path
    lock_file: str = ".restic_backup_lock"
    log_file: str = "restic_backup.log"
    restic_path: str = "/usr/local/bin/restic"
    files_from: str = "backup.txt"
    exclude_file: str = "exclude.txt"
    s3_storage_class: str = "STANDARD_IA"
    host_name: str = "localhost"
    security_service: str = "restic_backup"
    require_ac_power: bool = True
    cleanup_old_backups: bool = False
    discord_webhook_url: str = ""

    @property
    def lock_path(self) -> Path:
        return self.backup_directory / self.lock_file

    @property
    def log_path(self) -> Path:
        return self.backup_directory / "logs" / self.log_file

    @property
    def files_from_path(self) -> Path:
        return self.backup_directory / self.files_from

    @property
    def exclude_file_path(self) -> Path:
        return self.backup_directory / self.exclude_file


@dataclass(frozen=True)
class SecretSet:
    """Credentials for one run. Values are kept out of ``repr``."""

    region: str = field(repr=False)
    access_key_id: str = field(repr=False)
    secret_access_key: str = field(repr=False)
    repository: str = field(repr=False)
    password: str = field(repr=False)

    def as_environ(self) -> dict[str, str]:
        """Map the secrets onto the environment variable names restic and AWS read."""
        return {
            env_name: getattr(self, attr)
            for attr, (_, env_name) in SECRET_ACCOUNTS.items()
        }


@dataclass(frozen=True)
class CommandResult:
    executable: str
    args: tuple[str, ...]
    returncode: int | None
    stdout_lines: list[str]
    stderr_lines: list[str]
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.returncode == 0


@dataclass(frozen=True)
class MetricPoint:
    name: str
    value: float
    unit: str
    timestamp: datetime.datetime
    host: str

    def to_datum(self) -> MetricDatum:
        return {
            "MetricName": self.name,
            "Dimensions": [{"Name": METRICS_DIMENSION, "Value": self.host}],
            "Timestamp": self.timestamp,
            "Unit": self.unit,
            "Value": self.value,
        }


class Deadline:
    """A monotonic-clock deadline shared by every step of a run."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        self.expires_at = time.monotonic() + seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0


# -----------------------------------------------------------------------------
# Global Variables
# -----------------------------------------------------------------------------
log = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise SettingsError(f"'{key}' must be a mapping, got {type(value).__name__}")
    return value


def _as_str(raw: dict[str, Any], key: str, default: str) -> str:
    value = raw.get(key)
    if value is None:
        return default
    if isinstance(value, (dict, list, bool)):
        raise SettingsError(f"'{key}' must be a string, got {type(value).__name__}")
    return str(value)


def _as_bool(raw: dict[str, Any], key: str, default: bool) -> bool:
    value = raw.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise SettingsError(f"'{key}' must be true or false, got {value!r}")
    return value


def load_settings(path: Path) -> RunSettings:
    """Reads the YAML config file and returns the frozen settings for this run.

    Keys that are absent fall back to the same defaults ``RunSettings`` has.
    """
    try:
        with open(path, "r") as f:
            raw: object = yaml.safe_load(f)
    except OSError as e:
        raise SettingsError(f"Error reading config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise SettingsError(f"Error parsing config file {path}: {e}") from e

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise SettingsError(f"Config file {path} must contain a mapping at the top level")

    restic = _section(raw, "restic")
    notifications = _section(raw, "notifications")
    defaults = RunSettings(backup_directory=DEFAULT_CONFIG_PATH.parent)

    backup_directory = _as_str(raw, "backup_directory", str(defaults.backup_directory))
    return RunSettings(
        backup_directory=Path(backup_directory).expanduser(),
        lock_file=_as_str(raw, "lock_file", defaults.lock_file),
        log_file=_as_str(raw, "log_file", defaults.log_file),
        restic_path=_as_str(restic, "executable_path", defaults.restic_path),
        files_from=_as_str(restic, "files_from", defaults.files_from),
        exclude_file=_as_str(restic, "exclude_file", defaults.exclude_file),
        s3_storage_class=_as_str(restic, "s3_storage_class", defaults.s3_storage_class),
        host_name=_as_str(raw, "host_name", defaults.host_name),
        security_service=_as_str(raw, "security_service", defaults.security_service),
        require_ac_power=_as_bool(raw, "require_ac_power", defaults.require_ac_power),
        cleanup_old_backups=_as_bool(
            raw, "cleanup_old_backups", defaults.cleanup_old_backups
        ),
        discord_webhook_url=_as_str(
            notifications, "discord_webhook_url", defaults.discord_webhook_url
        ),
    )


# -----------------------------------------------------------------------------
# Helper Functions
# -----------------------------------------------------------------------------


def setup_logging(settings: RunSettings) -> None:
    """Configures logging to both console and a size-rotated file."""
    settings.log_path.parent.mkdir(parents=True, exist_ok=True)
    log.setLevel(logging.INFO)
    formatter = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )
    log.handlers.clear()
    log.addHandler(logging.StreamHandler(sys.stdout))
    log.addHandler(
        logging.handlers.RotatingFileHandler(
            settings.log_path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT
        )
    )
    for handler in log.handlers:
        handler.setFormatter(formatter)


def send_discord_notification(
    settings: RunSettings,
    status: str,
    message: str,
    color: int,
    title_override: str | None = None,
) -> None:
    """Sends a formatted notification to the configured Discord webhook."""
    if not settings.discord_webhook_url:
        return

    title = title_override or f"Restic Backup Status: {status}"
    payload = {
        "username": f"Restic Backup ({settings.host_name})",
        "embeds": [
            {
                "title": title,
                "description": message,
                "color": color,
                "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
            }
        ],
    }
    try:
        response = requests.post(
            settings.discord_webhook_url, json=payload, timeout=DISCORD_TIMEOUT
        )
        response.raise_for_status()
    except requests.RequestException as e:
        log.error(f"Failed to send Discord notification: {e}")


def _split_lines(output: str | bytes | None) -> list[str]:
    # TimeoutExpired carries raw bytes even when the child ran in text mode.
    if output is None:
        return []
    if isinstance(output, bytes):
        output = output.decode("utf-8", errors="replace")
    return [line for line in output.strip().splitlines() if line.strip()]


# -----------------------------------------------------------------------------
# Instance Lock
# -----------------------------------------------------------------------------


class LockHandle:
    """Exclusive ownership of the lock file, released exactly once."""

    def __init__(self, path: Path, lock_file: IO[str]) -> None:
        self.path = path
        self._file: IO[str] | None = lock_file

    @property
    def released(self) -> bool:
        return self._file is None

    def release(self) -> None:
        if self._file is None:
            return
        lock_file, self._file = self._file, None
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        finally:
            lock_file.close()

    def __enter__(self) -> "LockHandle":
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.release()


def acquire_lock(path: Path) -> LockHandle:
    """Takes the instance lock without waiting.

    Raises ``LockBusy`` when another process holds it and ``LockError`` for
    anything else (missing directory, permissions, ...).
    """
    try:
        lock_file = open(path, "a")
    except OSError as e:
        raise LockError(f"cannot open lock file {path}: {e}") from e

    try:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError as e:
        lock_file.close()
        raise LockBusy(f"lock file {path} is held by another process") from e
    except OSError as e:
        lock_file.close()
        raise LockError(f"cannot lock {path}: {e}") from e

    return LockHandle(path, lock_file)


# -----------------------------------------------------------------------------
# Pre-flight: Power State and Secrets
# -----------------------------------------------------------------------------


def is_on_ac_power() -> bool:
    """Checks if the system is running on AC power."""
    try:
        result = subprocess.run(
            ["pmset", "-g", "ps"],
            capture_output=True,
            text=True,
            check=True,
            timeout=POWER_CHECK_TIMEOUT,
        )
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
        raise PowerCheckError(f"failed to execute pmset: {e}") from e
    return "AC Power" in result.stdout


def fetch_secret(service: str, account: str, timeout: float = SECRET_TIMEOUT) -> str:
    """Retrieves one generic password from the macOS keychain.

    The value itself never appears in an exception message.
    """
    command = ["security", "find-generic-password", "-s", service, "-a", account, "-w"]
    try:
        result = subprocess.run(
            command, capture_output=True, text=True, check=True, timeout=timeout
        )
    except subprocess.TimeoutExpired as e:
        raise SecretError(
            f"timed out after {timeout:g}s reading '{account}' from '{service}'"
        ) from e
    except subprocess.CalledProcessError as e:
        raise SecretError(
            f"security exited with status {e.returncode} reading '{account}' from '{service}'"
        ) from e
    except OSError as e:
        raise SecretError(f"cannot run security for '{account}': {e}") from e

    secret = result.stdout.strip()
    if not secret:
        raise SecretError(f"empty value for '{account}' in '{service}'")
    return secret


def fetch_secret_set(service: str) -> SecretSet:
    values = {
        attr: fetch_secret(service, account)
        for attr, (account, _) in SECRET_ACCOUNTS.items()
    }
    return SecretSet(**values)


# -----------------------------------------------------------------------------
# Process Runner
# -----------------------------------------------------------------------------


def run_command(
    deadline: Deadline,
    executable: str,
    *args: str,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Runs an external command and logs everything it printed.

    Every non-empty stderr line is logged at ERROR. On failure one more ERROR
    carries the cause and stdout is dropped; on success every non-empty stdout
    line is logged at INFO. Each event is tagged with ``cmd`` and
    ``operation`` (the first argument). The child is killed once the
    deadline passes.
    """
    operation = args[0] if args else ""
    tags = {"cmd": executable, "operation": operation}
    returncode: int | None = None
    stdout_lines: list[str] = []
    stderr_lines: list[str] = []
    error: str | None = None

    if deadline.expired:
        error = "run deadline exceeded before the command started"
    else:
        try:
            process = subprocess.run(
                [executable, *args],
                capture_output=True,
                text=True,
                env=env,
                timeout=deadline.remaining(),
            )
        except subprocess.TimeoutExpired as e:
            stderr_lines = _split_lines(e.stderr)
            error = f"killed after exceeding the run deadline ({e.timeout:g}s)"
        except OSError as e:
            error = str(e)
        else:
            returncode = process.returncode
            stdout_lines = _split_lines(process.stdout)
            stderr_lines = _split_lines(process.stderr)
            if returncode != 0:
                error = f"exit status {returncode}"

    result = CommandResult(
        executable=executable,
        args=tuple(args),
        returncode=returncode,
        stdout_lines=stdout_lines,
        stderr_lines=stderr_lines,
        error=error,
    )

    for line in result.stderr_lines:
        log.error(f"[{operation}] {line}", extra=tags)

    if not result.ok:
        log.error(
            f"[{operation}] failed to execute the command: {result.error}",
            extra={**tags, "err": result.error},
        )
        return result

    for line in result.stdout_lines:
        log.info(f"[{operation}] {line}", extra=tags)
    return result


# -----------------------------------------------------------------------------
# Backup and Retention
# -----------------------------------------------------------------------------


def build_backup_args(settings: RunSettings) -> list[str]:
    return [
        "backup",
        "-o",
        f"s3.storage-class={settings.s3_storage_class}",
        "--files-from",
        str(settings.files_from_path),
        "--exclude-file",
        str(settings.exclude_file_path),
    ]


def prune_snapshots(
    deadline: Deadline, settings: RunSettings, env: dict[str, str]
) -> bool:
    """Forgets and prunes old snapshots. A failure here is logged, not raised."""
    result = run_command(deadline, settings.restic_path, *FORGET_ARGS, env=env)
    if not result.ok:
        log.error(
            "Forget failed",
            extra={"cmd": settings.restic_path, "command": "forget"},
        )
    return result.ok


# -----------------------------------------------------------------------------
# Metrics
# -----------------------------------------------------------------------------


def build_metric_points(
    host: str, duration: float, timestamp: datetime.datetime | None = None
) -> list[MetricPoint]:
    timestamp = timestamp or datetime.datetime.now(datetime.timezone.utc)
    return [
        MetricPoint("BackupDuration", duration, "Seconds", timestamp, host),
        MetricPoint("BackupCount", 1.0, "Count", timestamp, host),
    ]


def send_backup_metrics(points: list[MetricPoint], secrets: SecretSet) -> bool:
    """Sends the backup metrics to AWS CloudWatch."""
    try:
        client = boto3.client(
            "cloudwatch",
            region_name=secrets.region,
            aws_access_key_id=secrets.access_key_id,
            aws_secret_access_key=secrets.secret_access_key,
        )
        _ = client.put_metric_data(
            Namespace=METRICS_NAMESPACE,
            MetricData=[point.to_datum() for point in points],
        )
    except (BotoCoreError, ClientError) as e:
        log.error(f"cannot put metric data to CloudWatch: {e}")
        return False
    log.info("Sent backup metrics to CloudWatch")
    return True


# -----------------------------------------------------------------------------
# Main Execution
# -----------------------------------------------------------------------------


def _run_locked(
    settings: RunSettings, deadline: Deadline, start_time: float, dry_run: bool
) -> int:
    if shutil.which(settings.restic_path) is None:
        log.error(f"cannot find the restic command: {settings.restic_path}")
        return 1

    try:
        on_ac_power = is_on_ac_power()
    except PowerCheckError as e:
        log.error(f"cannot check if the system is running on AC power: {e}")
        return 1
    if settings.require_ac_power and not on_ac_power:
        log.warning("The system is not running on AC power. Skipping backup.")
        return 0

    backup_args = build_backup_args(settings)
    if dry_run:
        log.info(f"DRY RUN: would run {settings.restic_path} {' '.join(backup_args)}")
        if settings.cleanup_old_backups:
            log.info(f"DRY RUN: would run {settings.restic_path} {' '.join(FORGET_ARGS)}")
        log.info("DRY RUN: Skipping secrets, restic, metrics and notifications.")
        return 0

    secrets = fetch_secret_set(settings.security_service)
    env = {**os.environ, **secrets.as_environ()}

    backup = run_command(deadline, settings.restic_path, *backup_args, env=env)
    if not backup.ok:
        log.error(
            "Backup failed",
            extra={"cmd": settings.restic_path, "command": "backup"},
        )
        last_error = "\n".join(backup.stderr_lines[-3:]) or str(backup.error)
        send_discord_notification(
            settings,
            "Failed",
            f"**Backup failed ({backup.error})**\n```\n{last_error}\n```",
            COLOR_RED,
        )
        return 1

    if settings.cleanup_old_backups:
        _ = prune_snapshots(deadline, settings, env)

    elapsed = time.monotonic() - start_time
    if not send_backup_metrics(build_metric_points(settings.host_name, elapsed), secrets):
        log.error("cannot send backup metrics to CloudWatch")

    send_discord_notification(
        settings,
        "Success",
        f"Backup of `{settings.host_name}` finished in {elapsed:.1f}s",
        COLOR_GREEN,
    )
    log.info(
        f"Backup completed successfully in {elapsed:.1f}s",
        extra={"duration": elapsed},
    )
    return 0


def run_backup(settings: RunSettings, dry_run: bool = False) -> int:
    """Runs one guarded backup and returns the process exit status.

    0 covers success and the intentional skips (lock busy, on battery);
    anything else is a failure a scheduler should see. The lock is held by a
    ``with`` block and is released on every path out of the run.
    """
    start_time = time.monotonic()
    try:
        with acquire_lock(settings.lock_path):
            deadline = Deadline(RUN_TIMEOUT)
            return _run_locked(settings, deadline, start_time, dry_run)
    except LockBusy:
        log.warning("Another instance of the program is already running. Exiting.")
        return 0
    except LockError as e:
        log.error(f"cannot lock the lock file: {e}")
        return 1
    except SecretError as e:
        log.critical(f"cannot get security data: {e}")
        send_discord_notification(
            settings,
            "Critical Failure",
            f"Could not read credentials from the keychain:\n```\n{e}\n```",
            COLOR_RED,
        )
        return 1
    except Exception as e:
        log.critical(f"An unexpected critical error occurred: {e}", exc_info=True)
        return 1


def main(argv: list[str] | None = None) -> int:
    """Main script execution logic."""
    parser = argparse.ArgumentParser(
        description="Run a locked, power-aware restic backup."
    )
    _ = parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to the YAML config file (default: {DEFAULT_CONFIG_PATH}).",
    )
    _ = parser.add_argument(
        "-d", "--dry-run", action="store_true", help="Perform a dry run."
    )
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
        setup_logging(settings)
    except (SettingsError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.dry_run:
        log.info("--- Starting DRY RUN ---")
    return run_backup(settings, dry_run=args.dry_run)


if __name__ == "__main__":
    sys.exit(main())
