"""Run a locally installed LLM agent CLI (codex or gemini) and extract its reply.

No API keys are read here and nothing the model says is executed: the
provider is spawned with stdin closed, under a hard wall-clock limit, and
only its reply text comes back.
"""

import os
import shutil
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from . import minijson
from .report import AgentError, ConfigError

PROVIDER_NONE = "none"
PROVIDER_CODEX = "codex"
PROVIDER_GEMINI = "gemini"
PROVIDERS = (PROVIDER_CODEX, PROVIDER_GEMINI)

MAX_REPLY_BYTES = 2 * 1024 * 1024  # 2 MiB
DEFAULT_TIMEOUT = 300
MAX_TIMEOUT = 3600
# Extra seconds granted past the `timeout` wrapper before Python gives up.
_BACKSTOP_GRACE = 5
# timeout(1) exits 124 on TERM, 137 (128 + SIGKILL) with --signal=KILL.
TIMEOUT_EXIT_CODES = frozenset({124, 137, -9})
GEMINI_CRASH_SIGNATURE = "An unexpected critical error occurred"
_NO_TOOLS = "agentbridge-none"

ENV_PROVIDER = "AGENTBRIDGE_LLM_PROVIDER"
ENV_TIMEOUT = "AGENTBRIDGE_LLM_TIMEOUT_SEC"
ENV_UNSAFE = ("AGENTBRIDGE_LLM_UNSAFE", "AGENTBRIDGE_CODEX_DANGEROUS")
BIN_ENV = {
    PROVIDER_CODEX: "AGENTBRIDGE_CODEX_BIN",
    PROVIDER_GEMINI: "AGENTBRIDGE_GEMINI_BIN",
}

# Common per-user install locations, checked before PATH.
_FALLBACK_DIRS = (
    Path.home() / ".local" / "bin",
    Path.home() / ".npm-global" / "bin",
)


class LLMError(AgentError):
    """A provider call that produced no usable reply."""

    kind = "llm_error"


class ExecutableNotFoundError(LLMError):
    kind = "executable_not_found"


class LLMTimeoutError(LLMError):
    kind = "timeout"


class ProviderFailedError(LLMError):
    kind = "provider_failed"


class ReplyIOError(LLMError):
    kind = "io_error"


class EmptyReplyError(LLMError):
    kind = "empty_reply"


class ReplyTooLargeError(LLMError):
    kind = "reply_too_large"


class ReplyParseError(LLMError):
    kind = "parse_error"


class InvalidInputError(LLMError):
    kind = "invalid_input"


class ProviderConfigError(LLMError, ConfigError):
    """An unrecognized provider name passed to the invoker."""

    kind = "config_error"


# --- Provider selection ---


def parse_provider(name: str | None) -> str:
    """Map a user-supplied provider name to a provider constant.

    Empty means "none". Raises ConfigError for anything unrecognized.
    """
    if not name:
        return PROVIDER_NONE
    key = name.strip().lower()
    if key in PROVIDERS or key == PROVIDER_NONE:
        return key
    raise ConfigError(f"Unknown LLM provider {name!r} (expected codex|gemini)")


def default_provider(environ=None) -> str:
    """Provider named by AGENTBRIDGE_LLM_PROVIDER, else codex."""
    env = os.environ if environ is None else environ
    value = env.get(ENV_PROVIDER)
    if value:
        try:
            return parse_provider(value)
        except ConfigError:
            pass
    return PROVIDER_CODEX


# --- Settings ---


def parse_timeout(value, default: int = DEFAULT_TIMEOUT) -> int:
    """Parse a timeout in seconds; out-of-range or garbage yields default."""
    try:
        seconds = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    if seconds <= 0 or seconds > MAX_TIMEOUT:
        return default
    return seconds


def _env_toggle(value: str | None) -> bool | None:
    if not value:
        return None
    return value != "0"


@dataclass
class InvokerSettings:
    """Per-call knobs for the invoker.

    executables maps a provider name to an explicit binary path.
    """

    timeout: int = DEFAULT_TIMEOUT
    unsafe: bool = False
    executables: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls, environ=None, *, config: dict | None = None):
        """Build settings from config values overridden by the environment."""
        env = os.environ if environ is None else environ
        config = config or {}

        timeout = parse_timeout(config.get("timeout", DEFAULT_TIMEOUT))
        if env.get(ENV_TIMEOUT):
            timeout = parse_timeout(env[ENV_TIMEOUT])

        toggles = [_env_toggle(env.get(name)) for name in ENV_UNSAFE]
        toggles = [t for t in toggles if t is not None]
        unsafe = any(toggles) if toggles else bool(config.get("unsafe", False))

        executables = {}
        for provider, var in BIN_ENV.items():
            path = env.get(var) or config.get(f"{provider}_bin")
            if path:
                executables[provider] = path

        return cls(timeout=timeout, unsafe=unsafe, executables=executables)


# --- Command construction ---


def resolve_executable(provider: str, settings: InvokerSettings) -> str:
    """Find the provider binary: explicit override, fallback dirs, then PATH."""
    override = settings.executables.get(provider)
    if override:
        return override

    for directory in _FALLBACK_DIRS:
        candidate = directory / provider
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)

    found = shutil.which(provider)
    if found:
        return found

    raise ExecutableNotFoundError(
        f"Cannot find {provider} executable (set {BIN_ENV[provider]})"
    )


def build_codex_argv(
    binary: str, prompt: str, output_path: str, *, unsafe: bool = False
) -> list[str]:
    if unsafe:
        head = [binary, "exec", "--dangerously-bypass-approvals-and-sandbox"]
    else:
        head = [binary, "-a", "never", "exec", "-s", "read-only"]
    return head + [
        "--color",
        "never",
        "--skip-git-repo-check",
        "--output-last-message",
        output_path,
        prompt,
    ]


def build_gemini_argv(binary: str, prompt: str) -> list[str]:
    return [
        binary,
        "-p",
        prompt,
        "--output-format",
        "json",
        "--allowed-mcp-server-names",
        _NO_TOOLS,
        "--allowed-tools",
        _NO_TOOLS,
    ]


def wrap_timeout(argv: list[str], timeout: int) -> list[str]:
    """Prefix argv with `timeout --signal=KILL Ns` when the utility exists."""
    if sys.platform == "win32":
        return list(argv)
    timeout_bin = shutil.which("timeout")
    if timeout_bin is None:
        return list(argv)
    return [timeout_bin, "--signal=KILL", f"{timeout}s", *argv]


# --- Process handling ---


def _decode(data: bytes | None) -> str:
    if not data:
        return ""
    return data.decode("utf-8", errors="replace")


def _with_output(message: str, stdout: str, stderr: str) -> str:
    """Append captured stderr (preferred) or stdout for diagnosis."""
    if stderr:
        return f"{message} (stderr follows)\n{stderr}"
    if stdout:
        return f"{message} (stdout follows)\n{stdout}"
    return message


def _timeout_message(provider: str, timeout: int) -> str:
    return f"{provider} timed out after {timeout}s (set {ENV_TIMEOUT})"


def _spawn(provider: str, argv: list[str], timeout: int) -> tuple[int, str, str]:
    try:
        proc = subprocess.run(
            argv,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            timeout=timeout + _BACKSTOP_GRACE,
        )
    except subprocess.TimeoutExpired as e:
        raise LLMTimeoutError(_timeout_message(provider, timeout)) from e
    except OSError as e:
        raise ProviderFailedError(f"Failed to run {provider} CLI: {e}") from e
    return proc.returncode, _decode(proc.stdout), _decode(proc.stderr)


def _check_exit(
    provider: str, returncode: int, stdout: str, stderr: str, timeout: int
) -> None:
    if returncode == 0:
        return
    if returncode in TIMEOUT_EXIT_CODES:
        raise LLMTimeoutError(_timeout_message(provider, timeout))
    if returncode < 0:
        status = f"killed by signal {-returncode}"
    else:
        status = f"exit status {returncode}"
    raise ProviderFailedError(_with_output(f"{provider} failed ({status})", stdout, stderr))


def _read_reply_file(path: str) -> str:
    """Read the codex last-message file. A missing file reads as empty."""
    try:
        with open(path, "rb") as f:
            data = f.read(MAX_REPLY_BYTES + 1)
    except FileNotFoundError:
        return ""
    except OSError as e:
        raise ReplyIOError(f"Failed to read LLM output file: {e}") from e
    if len(data) > MAX_REPLY_BYTES:
        raise ReplyTooLargeError("LLM reply too long")
    return _decode(data)


def _remove_output_file(path: str) -> None:
    # A cleanup failure must not replace the reply or its error.
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError:
        if os.path.isdir(path):
            shutil.rmtree(path, ignore_errors=True)


def _run_codex(binary: str, prompt: str, settings: InvokerSettings) -> str:
    try:
        fd, output_path = tempfile.mkstemp(prefix="agentbridge_codex_lastmsg_")
    except OSError as e:
        raise ReplyIOError(f"Failed to create temp file for codex output: {e}") from e
    os.close(fd)

    try:
        argv = build_codex_argv(binary, prompt, output_path, unsafe=settings.unsafe)
        returncode, stdout, stderr = _spawn(
            PROVIDER_CODEX, wrap_timeout(argv, settings.timeout), settings.timeout
        )
        _check_exit(PROVIDER_CODEX, returncode, stdout, stderr, settings.timeout)
        reply = _read_reply_file(output_path)
    finally:
        _remove_output_file(output_path)

    if not reply:
        raise EmptyReplyError(_with_output("codex returned no reply", stdout, stderr))
    return reply


def extract_gemini_response(stdout: str, stderr: str = "") -> str:
    """Pull the "response" string out of gemini's JSON output."""
    payload = minijson.strip_to_json(stdout)
    response = None
    if payload is not None:
        response = minijson.extract_string_field(payload, "response", full_unicode=True)

    if response is None:
        if stdout:
            raise ReplyParseError(
                f"Failed to parse gemini response (output follows)\n{stdout}"
            )
        if stderr:
            raise ReplyParseError(f"gemini returned no JSON (stderr follows)\n{stderr}")
        raise ReplyParseError("gemini returned no reply")

    if len(response.encode("utf-8")) > MAX_REPLY_BYTES:
        raise ReplyTooLargeError("LLM reply too long")
    if not response:
        raise EmptyReplyError("gemini returned an empty response")
    return response


def _run_gemini(binary: str, prompt: str, settings: InvokerSettings) -> str:
    argv = build_gemini_argv(binary, prompt)
    returncode, stdout, stderr = _spawn(
        PROVIDER_GEMINI, wrap_timeout(argv, settings.timeout), settings.timeout
    )
    _check_exit(PROVIDER_GEMINI, returncode, stdout, stderr, settings.timeout)

    # gemini can exit 0 after crashing; the banner is the only signal.
    if GEMINI_CRASH_SIGNATURE in stderr:
        raise ProviderFailedError(f"gemini CLI error:\n{stderr}")

    return extract_gemini_response(stdout, stderr)


# --- Public API ---


def _complete(provider: str, prompt: str, settings: InvokerSettings | None) -> str:
    if not prompt or not prompt.strip():
        raise InvalidInputError("Missing prompt")

    try:
        provider = parse_provider(provider)
    except ConfigError as e:
        raise ProviderConfigError(str(e)) from e
    if provider == PROVIDER_NONE:
        provider = default_provider()
    if provider == PROVIDER_NONE:
        raise InvalidInputError("No LLM provider selected")

    if settings is None:
        settings = InvokerSettings.from_env()
    binary = resolve_executable(provider, settings)

    if provider == PROVIDER_CODEX:
        return _run_codex(binary, prompt, settings)
    return _run_gemini(binary, prompt, settings)


def invoke(
    provider: str, prompt: str, settings: InvokerSettings | None = None
) -> tuple[str | None, LLMError | None]:
    """Run one completion. Returns (reply, None) or (None, error); never raises LLMError."""
    try:
        return _complete(provider, prompt, settings), None
    except LLMError as e:
        return None, e


def complete(provider: str, prompt: str, settings: InvokerSettings | None = None) -> str:
    """Run one completion, raising the LLMError on failure."""
    reply, err = invoke(provider, prompt, settings)
    if err is not None:
        raise err
    return reply


def complete_with_error(
    provider: str, prompt: str, settings: InvokerSettings | None = None
) -> tuple[str | None, str | None]:
    """Like complete() but returns the error message instead of raising.

    Safe to call from a worker thread: nothing global is touched.
    """
    reply, err = invoke(provider, prompt, settings)
    return reply, (str(err) if err is not None else None)
