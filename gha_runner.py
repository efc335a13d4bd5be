#!/usr/bin/env python3
"""
Ephemeral GitHub Actions Self-Hosted Runner Supervisor

Registers a single ephemeral runner, lets it process exactly one job and
guarantees deregistration plus work directory cleanup however the process
ends (normal exit, job failure, SIGINT/SIGTERM/SIGHUP, early error).
Designed to be the CMD of an actions-runner container image.

ALGORITHM:
==========

1. Validate ACCESS_TOKEN (or a GitHub App) and REPOSITORY, exit 1 if missing
2. Install the cleanup guard (atexit + SIGINT/SIGTERM/SIGHUP)
3. Read the credentials and remove them from the environment, so that
   config.sh/run.sh never inherit the access token
4. Generate the runner name:
   - RUNNER_FULL_NAME if set (truncated to 64 bytes)
   - otherwise <RUNNER_NAME_PREFIX>-<RUNNER_NAME><hostname or 12 random hex>
5. Request a registration token:
   POST /repos/<REPOSITORY>/actions/runners/registration-token
6. Re-arm the cleanup guard with the registration token
7. chown -R <uid>:<RUNNER_GID> RUNNER_HOME (through sudo unless root)
8. Execute: config.sh --url https://github.com/<REPOSITORY> --token <token>
            --name <name> --ephemeral --unattended --disableupdate
9. Start run.sh, wait for it while forwarding signals, exit with its code

CLEANUP (runs once, on exit):
=============================
  - Token held: config.sh remove --token <token> (failure is only logged)
  - Always: remove the contents of the work directory (RUNNER_WORKSPACE)

ENVIRONMENT VARIABLES:
======================
  # Required
  ACCESS_TOKEN             - Token allowed to create registration tokens
  REPOSITORY               - Target repository (owner/name)

  # GitHub App (alternative to ACCESS_TOKEN)
  GITHUB_CLIENT_ID         - GitHub App Client ID
  GITHUB_APP_KEY_PATH      - Path to the GitHub App private key PEM file
                             Only the variable is scrubbed: the file stays readable
                             by jobs running as the same user unless it is removed
                             or its permissions exclude that user.

  # Runner Naming
  RUNNER_FULL_NAME         - Full runner name, overrides everything below
  RUNNER_NAME_PREFIX       - Name prefix (default: github-runner)
  RUNNER_NAME              - Fragment inserted before the host name

  # Runner Configuration
  RUNNER_HOME              - Directory holding config.sh/run.sh (default: /home/runner)
  RUNNER_WORKSPACE         - Work directory, relative to RUNNER_HOME (default: _work)
  RUNNER_LABELS            - Extra labels (--labels), optional
  RUNNER_GROUP             - Runner group (--runnergroup), optional
  RUNNER_GID               - Group owning RUNNER_HOME (default: 999)

  # Timeouts & Retries
  RUNNER_SETUP_TIMEOUT     - Timeout for configure/remove in seconds, 0 disables (default: 60)
  GITHUB_HOST              - GitHub host, GHES supported (default: github.com)
  GITHUB_API_TIMEOUT       - HTTP timeout in seconds (default: 30)
  GITHUB_API_RETRIES       - Number of API retry attempts (default: 0)
  GITHUB_API_BACKOFF       - Exponential backoff multiplier for retries (default: 1.5)

EXIT CODES:
===========
  0     - The runner finished its job
  1     - Missing configuration or no registration token
  other - Exit status of config.sh/run.sh (128 + N when killed by signal N)
"""

import argparse
import atexit
from collections import deque
import errno
import functools
import http.client
import json
import logging
import os
import platform
import random
import secrets
import select
import shutil
import signal
import subprocess
import sys
import time
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Any, Callable, Dict, List, MutableMapping, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import jwt

__version__ = "1.0.0"

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("gha-runner")

DEFAULT_NAME_PREFIX = "github-runner"
MAX_NAME_LENGTH = 64
HOSTNAME_FILE = Path("/etc/hostname")


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


def exit_status(returncode: int) -> int:
    """Maps a Popen return code to a shell style exit status (128 + N for signal N)."""
    return 128 - returncode if returncode < 0 else returncode


class SignalHandler:
    """
    Context manager forwarding termination signals to the runner process
    while the supervisor waits on it. Restores original handlers upon exit.

    The first signal is passed on unchanged so the runner can finish or
    cancel its job; a repeated signal kills the runner. The handler may be
    entered before the runner is started: a signal received meanwhile is
    held and delivered by attach().
    """
    SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)

    def __init__(self, process: Optional[subprocess.Popen] = None):
        self.process = process
        self.shutdown_requested = False
        self.pending_signal: Optional[int] = None
        self._original_handlers: Dict[int, Any] = {}

    def attach(self, process: subprocess.Popen) -> None:
        self.process = process
        if self.pending_signal is not None:
            logger.info(f"Forwarding deferred signal {_signal_name(self.pending_signal)} to runner...")
            process.send_signal(self.pending_signal)

    def __enter__(self):
        for signum in self.SIGNALS:
            self._original_handlers[signum] = signal.getsignal(signum)
            signal.signal(signum, self._handler)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for signum, handler in self._original_handlers.items():
            if handler is not None:
                signal.signal(signum, handler)

    def _handler(self, signum: int, frame: Any):
        name = _signal_name(signum)

        if self.process is None:
            logger.info(f"Received signal {name} before the runner started.")
            if self.pending_signal is None:
                self.pending_signal = signum
        elif self.process.poll() is not None:
            logger.info(f"Received signal {name}, runner already exited.")
        elif self.shutdown_requested:
            logger.warning(f"Received signal {name} again. Killing runner...")
            self.process.kill()
        else:
            logger.info(f"Received signal {name}. Forwarding to runner...")
            self.process.send_signal(signum)

        self.shutdown_requested = True


# --- Constants & Enums ---
class RunnerExitCode(IntEnum):
    """Exit codes returned by the runner listener (run.sh)."""
    SUCCESS = 0
    TERMINATED_ERROR = 1
    RETRYABLE_ERROR = 2
    UPDATE_REQUIRED = 3
    EPHEMERAL_UPDATE_REQUIRED = 4
    SESSION_CONFLICT = 5


class RunnerError(Exception):
    """Base exception for runner supervisor errors."""
    exit_code = 1


class ConfigurationError(RunnerError):
    """A required input is missing or malformed."""


class TokenUnavailable(RunnerError):
    """The registration token could not be obtained."""


class DelegatedProcessFailure(RunnerError):
    """A runner script (or helper command) exited with a non-zero status."""

    def __init__(self, message: str, returncode: int):
        super().__init__(message)
        self.returncode = returncode
        self.exit_code = returncode


class CleanupFailure(RunnerError):
    """A teardown step failed. Logged by the cleanup guard, never escalated."""


# --- Configuration ---
def _env_number(name: str, default: str, cast: Callable = int):
    raw = os.getenv(name) or default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"Invalid {name} '{raw}': expected a number.")


@dataclass
class Config:
    """
    Non-secret settings derived from environment variables.
    Credentials are kept apart, see Credentials.
    """
    runner_home: Path = field(default_factory=lambda: Path(os.getenv("RUNNER_HOME", "/home/runner")))
    runner_work_dir: str = field(default_factory=lambda: os.getenv("RUNNER_WORKSPACE", "_work"))

    # Naming
    runner_full_name: Optional[str] = field(default_factory=lambda: os.getenv("RUNNER_FULL_NAME"))
    name_prefix: str = field(default_factory=lambda: os.getenv("RUNNER_NAME_PREFIX") or DEFAULT_NAME_PREFIX)
    runner_name: Optional[str] = field(default_factory=lambda: os.getenv("RUNNER_NAME"))
    hostname_file: Path = HOSTNAME_FILE

    runner_labels: Optional[str] = field(default_factory=lambda: os.getenv("RUNNER_LABELS"))
    runner_group: Optional[str] = field(default_factory=lambda: os.getenv("RUNNER_GROUP"))
    runner_gid: int = field(default_factory=lambda: _env_number("RUNNER_GID", "999"))

    github_host: str = field(default_factory=lambda: os.getenv("GITHUB_HOST") or "github.com")
    api_timeout: float = field(default_factory=lambda: _env_number("GITHUB_API_TIMEOUT", "30", float))
    api_retries: int = field(default_factory=lambda: _env_number("GITHUB_API_RETRIES", "0"))
    api_backoff: float = field(default_factory=lambda: _env_number("GITHUB_API_BACKOFF", "1.5", float))

    # Timeout for config.sh (configure/remove), 0 means wait forever.
    setup_timeout: int = field(default_factory=lambda: _env_number("RUNNER_SETUP_TIMEOUT", "60"))

    @property
    def config_script(self) -> Path:
        return self.runner_home / "config.sh"

    @property
    def run_script(self) -> Path:
        return self.runner_home / "run.sh"

    @property
    def work_dir(self) -> Path:
        return self.runner_home / self.runner_work_dir

    @property
    def api_base(self) -> str:
        if self.github_host == "github.com":
            return "https://api.github.com"
        # GitHub Enterprise Server
        return f"https://{self.github_host}/api/v3"

    def service_url(self, repository: str) -> str:
        return f"https://{self.github_host}/{repository}"


@dataclass(frozen=True)
class Credentials:
    """
    Secret inputs. Read once from the environment, then scrubbed from it
    before any child process is started.
    """
    repository: str
    access_token: Optional[str] = field(default=None, repr=False)
    client_id: Optional[str] = None
    app_key_path: Optional[str] = None

    ENV_VARS = ("ACCESS_TOKEN", "REPOSITORY", "GITHUB_CLIENT_ID", "GITHUB_APP_KEY_PATH")

    @property
    def has_app(self) -> bool:
        return bool(self.client_id and self.app_key_path)

    @classmethod
    def from_environ(cls, environ: Optional[MutableMapping[str, str]] = None) -> "Credentials":
        """Validates credential presence. Raises ConfigurationError."""
        environ = os.environ if environ is None else environ

        access_token = environ.get("ACCESS_TOKEN") or None
        client_id = environ.get("GITHUB_CLIENT_ID") or None
        app_key_path = environ.get("GITHUB_APP_KEY_PATH") or None

        if not access_token and not (client_id and app_key_path):
            raise ConfigurationError("ACCESS_TOKEN environment variable is not set.")

        repository = environ.get("REPOSITORY")
        if not repository:
            raise ConfigurationError("REPOSITORY environment variable is not set.")

        return cls(
            repository=repository,
            access_token=access_token,
            client_id=client_id,
            app_key_path=app_key_path,
        )

    @classmethod
    def scrub(cls, environ: Optional[MutableMapping[str, str]] = None) -> None:
        environ = os.environ if environ is None else environ
        for name in cls.ENV_VARS:
            environ.pop(name, None)


# --- Identity ---
def read_host_id(path: Path = HOSTNAME_FILE) -> Optional[str]:
    """Returns the host name from /etc/hostname, None if missing or empty."""
    try:
        host_id = path.read_text().strip()
    except OSError:
        return None
    return host_id or None


def _truncate_name(name: str) -> str:
    """Cuts the name to MAX_NAME_LENGTH bytes of UTF-8, never inside a character."""
    encoded = name.encode("utf-8", "surrogateescape")[:MAX_NAME_LENGTH]
    return encoded.decode("utf-8", "ignore")


def generate_identity(full_name: Optional[str] = None,
                      prefix: Optional[str] = None,
                      fragment: Optional[str] = None,
                      host_id: Optional[str] = None) -> str:
    """
    Builds the runner display name, at most MAX_NAME_LENGTH bytes in UTF-8
    (the same number of characters for ASCII names).

    A full name wins outright. Otherwise the name is
    <prefix>-<fragment><suffix>, where suffix is the host id or, when the
    host id is unknown, 12 random hex characters. Overlong names are
    truncated, never rejected.
    """
    if full_name:
        return _truncate_name(full_name)

    suffix = host_id or secrets.token_hex(6)
    name = f"{prefix or DEFAULT_NAME_PREFIX}-{fragment or ''}{suffix}"
    return _truncate_name(name)


# --- Token Broker ---
class GitHubAppAuthenticator:
    """
    Handles RSA signing for GitHub App Authentication.
    """
    JWT_TTL = 600

    def __init__(self, client_id: str, key_path: str):
        self.client_id = client_id
        self.key_path = key_path

    def _load_key(self) -> bytes:
        try:
            return Path(self.key_path).read_bytes()
        except OSError as e:
            raise TokenUnavailable(f"Could not read GitHub App private key {self.key_path}: {e}")

    def generate_jwt(self) -> str:
        """Sign a JWT using Client ID as Issuer."""
        signing_key = self._load_key()

        now = int(time.time())
        payload = {
            # Backdated against clock drift
            'iat': now - 60,
            'exp': now + self.JWT_TTL,
            'iss': self.client_id
        }

        try:
            return jwt.encode(payload, signing_key, algorithm='RS256')
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            raise TokenUnavailable(f"JWT signing failed: {e}")


class RetryPolicy:
    """
    Class-based decorator retrying transient network failures with
    exponential backoff. Reads api_retries/api_backoff from the decorated
    instance's config; 4xx responses are never retried.
    """

    def __init__(self, exceptions=(OSError, http.client.HTTPException)):
        self.exceptions = exceptions

    def __call__(self, func):
        @functools.wraps(func)
        def wrapper(obj, *args, **kwargs):
            config = getattr(obj, 'config', None)
            max_retries = getattr(config, 'api_retries', 0)
            backoff_factor = getattr(config, 'api_backoff', 1.5)

            delay = 1.0
            for attempt in range(max_retries + 1):
                try:
                    return func(obj, *args, **kwargs)
                except self.exceptions as e:
                    if isinstance(e, HTTPError) and 400 <= e.code < 500:
                        raise
                    if attempt >= max_retries:
                        raise

                    # Jitter keeps a fleet of restarting containers apart
                    sleep_time = delay * (1 + random.random() * 0.1)
                    logger.warning(f"API request failed: {e}. Retrying in {sleep_time:.2f}s (Attempt {attempt + 1}/{max_retries})...")

                    time.sleep(sleep_time)
                    delay *= backoff_factor

        return wrapper


class GitHubClient:
    """
    Exchanges the access credential for a runner registration token.
    """

    def __init__(self, config: Config):
        self.config = config

    @RetryPolicy()
    def _send_request(self, req: Request) -> bytes:
        with urlopen(req, timeout=self.config.api_timeout) as resp:
            return resp.read()

    def _execute_api_call(self, url: str, auth_token: str, method: str = "GET") -> Any:
        """
        Sends one authenticated request and parses the JSON body.
        Every failure is reported as TokenUnavailable.
        """
        req = Request(url, method=method)
        req.add_header("Authorization", f"Bearer {auth_token}")
        req.add_header("Accept", "application/vnd.github+json")
        req.add_header("X-GitHub-Api-Version", "2022-11-28")

        user_agent = f"gha-runner/{__version__} (Python {platform.python_version()}; {platform.system()})"
        req.add_header("User-Agent", user_agent)

        try:
            return json.loads(self._send_request(req))
        except HTTPError as e:
            if e.code == 401:
                raise TokenUnavailable("Bad credentials (401 Unauthorized). Check ACCESS_TOKEN.")
            elif e.code in (403, 404):
                raise TokenUnavailable(f"Access denied or not found at {url} ({e.code}). Check credentials and repository path.")
            raise TokenUnavailable(f"GitHub API Error: {e.code} {e.reason}")

        # URLError, timeouts, RemoteDisconnected, IncompleteRead
        except (OSError, http.client.HTTPException) as e:
            raise TokenUnavailable(f"Network error connecting to GitHub: {e}")

        except ValueError as e:
            raise TokenUnavailable(f"Invalid API response: {e}")

    @staticmethod
    def _extract_token(data: Any, kind: str) -> str:
        token = data.get("token") if isinstance(data, dict) else None
        if not token or not isinstance(token, str):
            raise TokenUnavailable(f"GitHub API response carries no {kind} token.")
        return token

    def _endpoint(self, repository: str, path_suffix: str) -> str:
        return f"{self.config.api_base}/repos/{repository}/{path_suffix}"

    # https://docs.github.com/en/apps/creating-github-apps/authenticating-with-a-github-app/authenticating-as-a-github-app-installation
    def _get_app_installation_token(self, credentials: Credentials) -> str:
        logger.info("Authenticating via GitHub App (Client ID)...")

        app_auth = GitHubAppAuthenticator(credentials.client_id, credentials.app_key_path)
        jwt_token = app_auth.generate_jwt()

        installation = self._execute_api_call(self._endpoint(credentials.repository, "installation"), jwt_token)
        installation_id = installation.get("id") if isinstance(installation, dict) else None
        if not installation_id:
            raise TokenUnavailable(f"GitHub App is not installed on {credentials.repository}.")
        logger.info(f"Installation ID found: {installation_id}")

        access_tokens_url = f"{self.config.api_base}/app/installations/{installation_id}/access_tokens"
        data = self._execute_api_call(access_tokens_url, jwt_token, method="POST")
        return self._extract_token(data, "installation access")

    def get_registration_token(self, credentials: Credentials) -> str:
        """
        Requests a registration token for the repository.
        Raises TokenUnavailable whatever the cause.
        """
        auth_token = credentials.access_token
        if not auth_token:
            if not credentials.has_app:
                raise TokenUnavailable("Authentication not configured.")
            auth_token = self._get_app_installation_token(credentials)

        logger.info(f"Requesting registration token for repository: {credentials.repository}")

        url = self._endpoint(credentials.repository, "actions/runners/registration-token")
        data = self._execute_api_call(url, auth_token, method="POST")

        return self._extract_token(data, "registration")


# --- Components ---
def run_as_root(args: List[str]) -> None:
    """Runs a command as root: directly when already root, otherwise through sudo."""
    cmd = list(args) if os.geteuid() == 0 else ["sudo", *args]

    try:
        result = subprocess.run(cmd)
    except OSError as e:
        raise RunnerError(f"Cannot execute {cmd[0]}: {e}")

    if result.returncode != 0:
        raise DelegatedProcessFailure(
            f"Command failed (Code {result.returncode}): {' '.join(cmd)}", result.returncode
        )


class Workspace:
    """
    File system side of the runner: scripts, ownership and the work directory.
    """

    def __init__(self, config: Config):
        self.config = config

    def verify_scripts(self) -> None:
        """
        Checks that config.sh and run.sh exist and are executable.
        Attempts to fix permissions if missing.
        """
        for script in (self.config.config_script, self.config.run_script):
            if not script.exists():
                raise RunnerError(f"Runner script not found at: {script}")

            if not os.access(script, os.X_OK):
                logger.warning(f"Script {script} is not executable. Attempting to fix (chmod +x)...")
                try:
                    script.chmod(script.stat().st_mode | 0o111)
                except OSError as e:
                    raise RunnerError(f"Failed to set executable permissions on {script}: {e}")

    def fix_ownership(self) -> None:
        owner = f"{os.getuid()}:{self.config.runner_gid}"
        logger.info(f"Setting ownership of {self.config.runner_home} to {owner}")
        run_as_root(["chown", "-R", owner, str(self.config.runner_home)])

    def _remove(self, path: Path) -> None:
        if path.is_symlink() or not path.is_dir():
            path.unlink()
        else:
            shutil.rmtree(path)

    def wipe_work_dir(self) -> None:
        """
        Removes the contents of the work directory, keeping the directory.
        Every entry is attempted; failures are collected into one CleanupFailure.
        """
        work_dir = self.config.work_dir
        if not work_dir.is_dir():
            logger.debug(f"No work directory at {work_dir}, nothing to clean.")
            return

        logger.info("Cleaning work directory...")

        failures: List[str] = []
        for entry in work_dir.iterdir():
            try:
                self._remove(entry)
                logger.debug(f"Removed: {entry}")
            except OSError as e:
                if e.errno == errno.ENOENT:
                    continue
                failures.append(f"{entry}: {e}")

        if failures:
            raise CleanupFailure("Failed to remove " + "; ".join(failures))


@dataclass
class ConfigureOptions:
    """Arguments of config.sh for one ephemeral registration."""
    url: str
    token: str = field(repr=False)
    name: str
    ephemeral: bool = True
    unattended: bool = True
    disable_update: bool = True
    labels: Optional[str] = None
    runner_group: Optional[str] = None

    def to_args(self) -> List[str]:
        args = ["--url", self.url, "--token", self.token, "--name", self.name]

        if self.ephemeral:
            args.append("--ephemeral")
        if self.unattended:
            args.append("--unattended")
        if self.disable_update:
            args.append("--disableupdate")

        if self.labels:
            args.extend(["--labels", self.labels])
        if self.runner_group:
            args.extend(["--runnergroup", self.runner_group])

        return args


class RunnerScripts:
    """
    The delegated runner: config.sh and run.sh of the actions/runner
    distribution. Nothing else in this module knows their flags.
    """
    IO_POLL_INTERVAL = 1.0
    ERROR_LOG_SIZE = 50
    TERMINATION_TIMEOUT = 5.0
    SENSITIVE_FLAGS = {'--token'}

    def __init__(self, config: Config):
        self.config = config

    def _sanitize_args(self, args: List[str]) -> str:
        """
        Masks values of sensitive arguments for logging purposes.
        Example: ['--token', 'SECRET'] -> '--token ***'
        """
        sanitized = []
        mask_next = False
        for arg in args:
            if mask_next:
                sanitized.append("***")
                mask_next = False
                continue
            sanitized.append(arg)
            mask_next = arg in self.SENSITIVE_FLAGS

        return " ".join(sanitized)

    def _terminate_process(self, process: Optional[subprocess.Popen]) -> None:
        """Terminate subprocess gracefully, escalating to force kill if needed."""
        if process is None or process.poll() is not None:
            return

        try:
            process.terminate()
            process.wait(timeout=self.TERMINATION_TIMEOUT)
        except subprocess.TimeoutExpired:
            process.kill()
            try:
                process.wait(timeout=self.TERMINATION_TIMEOUT)
            except subprocess.TimeoutExpired:
                logger.error(f"Process {process.pid} did not exit after SIGKILL.")

    def _stream_output(self, process: subprocess.Popen, timeout: Optional[int], captured_lines: deque) -> bool:
        """
        Echoes the process output until EOF or exit. Returns True on timeout.
        """
        start_time = time.time()

        while True:
            run_time = time.time() - start_time
            if timeout:
                if run_time > timeout:
                    return True
                wait_time = timeout - run_time
            else:
                wait_time = self.IO_POLL_INTERVAL

            rready, _, _ = select.select([process.stdout.fileno()], [], [], wait_time)

            if not rready:
                if process.poll() is not None:
                    return False
                continue

            line = process.stdout.readline()
            if not line:
                return False

            sys.stdout.write(line)
            sys.stdout.flush()

            captured_lines.append(line)

    def _exec(self, args: List[str], timeout: Optional[int] = None, check: bool = True) -> int:
        """
        Executes a command in RUNNER_HOME, streaming its output.

        Args:
            args: Command arguments as list.
            timeout: Max execution time in seconds (None for infinite).
            check: if true, and the process exits with a non-zero exit code,
                   a DelegatedProcessFailure exception will be raised
        """
        safe_cmd = self._sanitize_args(args)
        captured_lines: deque = deque(maxlen=self.ERROR_LOG_SIZE)

        logger.debug(f"Executing: {safe_cmd}")

        try:
            with subprocess.Popen(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                cwd=self.config.runner_home,
                bufsize=1
            ) as process:
                try:
                    timed_out = self._stream_output(process, timeout, captured_lines)
                except BaseException:
                    # Popen.__exit__ waits for the child, so stop it first
                    self._terminate_process(process)
                    raise
                if timed_out:
                    self._terminate_process(process)
        except OSError as e:
            raise RunnerError(f"Cannot execute {args[0]}: {e}")

        error_context = "".join(captured_lines).strip()

        if timed_out:
            stderr_info = f"\nLast output:\n{error_context}" if error_context else ""
            logger.error(f"Command timed out after {timeout}s: {safe_cmd}{stderr_info}")
            return_code = int(RunnerExitCode.TERMINATED_ERROR)
        else:
            return_code = exit_status(process.poll())

        if return_code != 0 and check:
            raise DelegatedProcessFailure(
                f"Command failed (Code {return_code}): {safe_cmd}\nLast output:\n{error_context}",
                return_code
            )

        return return_code

    def configure(self, options: ConfigureOptions) -> None:
        """Registers the runner with GitHub."""
        logger.info(f"Configuring the runner named '{options.name}'...")

        cmd = [str(self.config.config_script), *options.to_args()]
        self._exec(cmd, timeout=self.config.setup_timeout or None)

        logger.info("Runner configured successfully.")

    def remove(self, token: str) -> None:
        """Deregisters the runner."""
        cmd = [str(self.config.config_script), "remove", "--token", token]
        self._exec(cmd, timeout=self.config.setup_timeout or None)

        logger.info("Runner removed successfully.")

    def run(self) -> int:
        """
        Starts run.sh and waits for it. Termination signals received
        meanwhile are forwarded to it. Returns its exit status.
        """
        logger.info("Starting the runner...")

        # Installed before the spawn; a signal in between is held until attach()
        with SignalHandler() as handler:
            try:
                process = subprocess.Popen([str(self.config.run_script)], cwd=self.config.runner_home)
            except OSError as e:
                raise RunnerError(f"Cannot execute {self.config.run_script}: {e}")

            try:
                handler.attach(process)
                returncode = process.wait()
            except BaseException:
                self._terminate_process(process)
                raise

        if returncode < 0:
            logger.warning(f"Runner killed by signal {_signal_name(-returncode)}")
        else:
            try:
                meaning = RunnerExitCode(returncode).name
            except ValueError:
                meaning = "UNKNOWN"
            logger.info(f"Runner exited with code {returncode} ({meaning})")

        if handler.shutdown_requested:
            logger.info("Shutdown completed.")

        return exit_status(returncode)


# --- Cleanup ---
@dataclass(frozen=True)
class CleanupState:
    """What the exit handler knows. Replaced as a whole, never mutated."""
    token: Optional[str] = field(default=None, repr=False)

    @property
    def has_token(self) -> bool:
        return bool(self.token)


class CleanupGuard:
    """
    Process-wide exit handler.

    Installed once, before any side effect: runs at interpreter exit
    (normal return, sys.exit, uncaught exception) and on SIGINT, SIGTERM
    and SIGHUP, which are turned into SystemExit(128 + signum). The handler
    deregisters the runner when a registration token is held, then wipes
    the work directory. It runs at most once and never raises.
    """
    SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)

    def __init__(self, runner: RunnerScripts, workspace: Workspace,
                 register: Callable[[Callable], Any] = atexit.register):
        self.runner = runner
        self.workspace = workspace
        self._register = register
        self._state = CleanupState()
        self._installed = False
        self._finished = False

    @property
    def state(self) -> CleanupState:
        return self._state

    def install(self, state: CleanupState = CleanupState()) -> None:
        if self._installed:
            raise RunnerError("Cleanup guard is already installed.")

        self._state = state
        self._register(self.run)
        for signum in self.SIGNALS:
            signal.signal(signum, self._on_signal)

        self._installed = True
        logger.debug("Cleanup guard installed.")

    def rearm(self, token: str) -> None:
        if not self._installed:
            raise RunnerError("Cleanup guard is not installed.")

        # One reference assignment: a signal sees the old or the new state
        self._state = CleanupState(token=token)
        logger.debug("Cleanup guard re-armed with registration token.")

    def _on_signal(self, signum: int, frame: Any):
        logger.info(f"Received signal {_signal_name(signum)}. Exiting...")
        raise SystemExit(128 + signum)

    def _on_signal_during_cleanup(self, signum: int, frame: Any):
        logger.warning(f"Received signal {_signal_name(signum)} during cleanup, ignoring.")

    def _shield(self) -> None:
        for signum in self.SIGNALS:
            try:
                signal.signal(signum, self._on_signal_during_cleanup)
            except ValueError:
                # Not on the main thread, signals cannot reach us here anyway
                break

    def run(self) -> None:
        if self._finished:
            return
        # A signal before the shield is up must leave the guard runnable
        self._shield()
        self._finished = True

        state = self._state

        logger.info("--- Performing cleanup ---")

        if state.has_token:
            logger.info("Deregistering runner...")
            try:
                self.runner.remove(state.token)
            except Exception as e:
                logger.warning(f"Runner deregistration failed: {e}")

        try:
            self.workspace.wipe_work_dir()
        except Exception as e:
            logger.warning(f"Work directory cleanup failed: {e}")

        logger.info("--- Cleanup complete ---")


# --- Lifecycle ---
class LifecycleSupervisor:
    """
    Orchestrates one ephemeral runner:
    validate -> guard -> scrub -> name -> token -> re-arm -> chown -> configure -> run.
    """

    def __init__(self, config: Config,
                 environ: Optional[MutableMapping[str, str]] = None,
                 github: Optional[GitHubClient] = None,
                 runner: Optional[RunnerScripts] = None,
                 workspace: Optional[Workspace] = None,
                 guard: Optional[CleanupGuard] = None):
        self.config = config
        self.environ = os.environ if environ is None else environ
        self.github = github or GitHubClient(config)
        self.runner = runner or RunnerScripts(config)
        self.workspace = workspace or Workspace(config)
        self.guard = guard or CleanupGuard(self.runner, self.workspace)

    def _runner_name(self) -> str:
        if self.config.runner_full_name:
            return generate_identity(full_name=self.config.runner_full_name)

        return generate_identity(
            prefix=self.config.name_prefix,
            fragment=self.config.runner_name,
            host_id=read_host_id(self.config.hostname_file),
        )

    def run(self) -> int:
        """Returns the runner's exit status. Raises RunnerError subclasses."""
        credentials = Credentials.from_environ(self.environ)

        self.guard.install()
        Credentials.scrub(self.environ)

        runner_name = self._runner_name()

        token = self.github.get_registration_token(credentials)
        logger.info("Registration token received successfully.")

        self.guard.rearm(token)

        if not credentials.access_token and credentials.has_app:
            key_path = Path(credentials.app_key_path)
            if os.access(key_path, os.R_OK):
                logger.warning(f"GitHub App key {key_path} is still readable and will be visible to the job.")

        self.workspace.fix_ownership()
        self.workspace.verify_scripts()

        self.runner.configure(ConfigureOptions(
            url=self.config.service_url(credentials.repository),
            token=token,
            name=runner_name,
            labels=self.config.runner_labels,
            runner_group=self.config.runner_group,
        ))

        return self.runner.run()


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point"""
    parser = argparse.ArgumentParser(description="Ephemeral GitHub Actions Runner Supervisor")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    args = parser.parse_args(argv)

    if args.debug:
        logger.setLevel(logging.DEBUG)

    try:
        config = Config()
        exit_code = LifecycleSupervisor(config).run()
    except RunnerError as e:
        logger.error(str(e))
        sys.exit(e.exit_code)
    except Exception:
        logger.exception("Unexpected error occurred.")
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
