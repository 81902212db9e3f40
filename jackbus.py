#!/usr/bin/env python3

import subprocess
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple

# ==== CONFIGURATION ====
DBUS_MAX_RETRIES = 3
DBUS_RETRY_DELAY = 2
MISSING_TOOL_EXIT = 127

# Known phrases printed by jack_control/a2j_control (python-dbus) when the
# session bus cannot be reached. Version 2: the bare word "dbus" is gone, it
# also matched "DBus exception: org.jackaudio.Error.Generic" (a real failure).
BUS_ERROR_MARKERS_VERSION = 2
BUS_ERROR_MARKERS = (
    "org.freedesktop.dbus.error",
    "autolaunch",
    "failed to connect to socket",
    "unable to connect to the session bus",
    "dbus-launch",
    "could not connect to dbus",
    "dbus not available",
)
LEGACY_BUS_ERROR_MARKERS = ("dbus", "autolaunch", "org.freedesktop.dbus.error")

BUS_UNAVAILABLE = "bus-unavailable"
EXIT_CODE = "exit-code"


class JackHubError(Exception):
    """Base for conditions that abort a run with exit code 1."""


class MissingToolError(JackHubError):
    pass


# ==== COMMAND RUNNER ====
def run_command(argv, env=None, timeout=None) -> Tuple[int, str]:
    """Run argv and return (exit_code, combined stdout/stderr text)."""
    try:
        proc = subprocess.run(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            env=env,
            timeout=timeout,
        )
    except FileNotFoundError:
        logging.debug(f"Command not found: {argv[0]}")
        return MISSING_TOOL_EXIT, f"{argv[0]}: command not found"
    except subprocess.TimeoutExpired as e:
        output = e.output or ""
        if isinstance(output, bytes):
            output = output.decode(errors="replace")
        logging.warning(f"Command '{' '.join(argv)}' timed out after {timeout}s")
        return 124, output
    return proc.returncode, proc.stdout or ""


# ==== BUS FAILURE CLASSIFIER ====
def is_bus_unavailable(output, markers=BUS_ERROR_MARKERS):
    text = (output or "").lower()
    return any(marker in text for marker in markers)


def is_bus_unavailable_legacy(output):
    return is_bus_unavailable(output, LEGACY_BUS_ERROR_MARKERS)


# ==== RETRYING CALL ====
@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = DBUS_MAX_RETRIES
    backoff_seconds: float = DBUS_RETRY_DELAY
    classifier: Callable[[str], bool] = is_bus_unavailable


@dataclass(frozen=True)
class RetryableCall:
    command: str
    arguments: Tuple[str, ...] = ()
    policy: RetryPolicy = field(default_factory=RetryPolicy)

    @property
    def argv(self):
        return [self.command, *self.arguments]

    def __str__(self):
        return " ".join(self.argv)


@dataclass(frozen=True)
class CallResult:
    ok: bool
    output: str
    exit_code: int
    attempts: int
    failure: Optional[str] = None

    @property
    def bus_unavailable(self):
        return self.failure == BUS_UNAVAILABLE


def invoke(call, run=run_command, sleep=time.sleep) -> CallResult:
    """Run a control command, retrying only while the message bus is not ready.

    Any other non-zero exit (bad parameter, device busy) is returned after a
    single attempt, it will not heal by waiting.
    """
    policy = call.policy
    attempt = 0
    output = ""
    exit_code = 0
    while attempt < policy.max_attempts:
        attempt += 1
        exit_code, output = run(call.argv)
        if policy.classifier(output):
            if attempt < policy.max_attempts:
                logging.warning(
                    f"{call} failed - DBus not available (attempt {attempt}/{policy.max_attempts})"
                )
                logging.debug(f"DBus error: {output.strip()}")
                sleep(policy.backoff_seconds)
                continue
            logging.error(
                f"{call} failed after {policy.max_attempts} attempts - DBus not available"
            )
            logging.error(f"DBus error: {output.strip()}")
            return CallResult(False, output, exit_code, attempt, BUS_UNAVAILABLE)

        if exit_code == 0:
            return CallResult(True, output, exit_code, attempt)
        logging.warning(f"{call} returned {exit_code}: {output.strip()}")
        return CallResult(False, output, exit_code, attempt, EXIT_CODE)

    # max_attempts < 1
    return CallResult(False, output, exit_code, attempt, BUS_UNAVAILABLE)


# ==== CONTROL SURFACES ====
def jack_control(*args, run=run_command, sleep=time.sleep, policy=None):
    call = RetryableCall("jack_control", tuple(str(a) for a in args), policy or RetryPolicy())
    return invoke(call, run=run, sleep=sleep)


def a2j_control(*args, run=run_command, sleep=time.sleep, policy=None):
    call = RetryableCall("a2j_control", tuple(str(a) for a in args), policy or RetryPolicy())
    return invoke(call, run=run, sleep=sleep)
