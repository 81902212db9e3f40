#!/usr/bin/env python3

import logging
import os
import pwd
import re
import sys
import time
from dataclasses import dataclass
from typing import Optional

from jackbus import JackHubError, run_command

# ==== CONFIGURATION ====
RUNTIME_DIR = "/run/jackhub"
FALLBACK_RUNTIME_DIR = "/tmp/jackhub"
TRIGGER_FLAG = "device-detected"

LOGIN_WAIT_SECONDS = 120
LOGIN_POLL_SECONDS = 5
BUS_POLL_SECONDS = 1
USER_RUNTIME_ROOT = "/run/user"

DISPLAY_IN_WHO = re.compile(r"\(:(\d+)")


class NoSessionError(JackHubError):
    pass


@dataclass(frozen=True)
class Session:
    user: str
    uid: int
    home: str
    display: str = ":0"

    @property
    def runtime_dir(self):
        return os.path.join(USER_RUNTIME_ROOT, str(self.uid))

    @property
    def bus_socket(self):
        return os.path.join(self.runtime_dir, "bus")

    def environment(self):
        return {
            "DISPLAY": self.display,
            "DBUS_SESSION_BUS_ADDRESS": f"unix:path={self.bus_socket}",
            "XDG_RUNTIME_DIR": self.runtime_dir,
            "HOME": self.home,
        }


def is_root():
    return os.geteuid() == 0


# ==== RUNTIME STATE ====
def runtime_dir():
    """Shared runtime directory, created world-writable for both contexts."""
    override = os.environ.get("JACKHUB_RUNTIME_DIR")
    candidates = [override] if override else [RUNTIME_DIR, FALLBACK_RUNTIME_DIR]
    for path in candidates:
        try:
            os.makedirs(path, exist_ok=True)
            try:
                os.chmod(path, 0o777)
            except PermissionError:
                pass
            if os.access(path, os.W_OK):
                return path
        except OSError:
            continue
    return candidates[-1]


class FlagStore:
    """Existence-only markers shared between root and user runs."""

    def __init__(self, directory=None):
        self.directory = directory or runtime_dir()

    def path(self, name):
        return os.path.join(self.directory, name)

    def set(self, name):
        with open(self.path(name), "a"):
            pass
        logging.debug(f"Flag set: {self.path(name)}")

    def clear(self, name):
        try:
            os.remove(self.path(name))
            logging.debug(f"Flag cleared: {self.path(name)}")
        except FileNotFoundError:
            pass

    def is_set(self, name):
        return os.path.exists(self.path(name))


# ==== SESSION DISCOVERY ====
def parse_who(who_output, user=None):
    """(user, display) of the first graphical session line, or None."""
    for line in (who_output or "").splitlines():
        if "(:" not in line:
            continue
        parts = line.split()
        if not parts or (user and parts[0] != user):
            continue
        match = DISPLAY_IN_WHO.search(line)
        display = f":{match.group(1)}" if match else ":0"
        return parts[0], display
    return None


def session_for(user, display=":0"):
    try:
        entry = pwd.getpwnam(user)
    except KeyError:
        logging.error(f"User {user} not found")
        return None
    return Session(user, entry.pw_uid, entry.pw_dir, display)


def find_graphical_session(run=run_command, user=None) -> Optional[Session]:
    code, output = run(["who"])
    if code != 0:
        logging.debug(f"who failed: {output.strip()}")
        return None
    found = parse_who(output, user)
    if not found:
        return None
    return session_for(*found)


def current_session(run=run_command):
    """Session of the invoking (non-root) user."""
    user = pwd.getpwuid(os.getuid()).pw_name
    session = find_graphical_session(run, user=user)
    if session:
        return session
    display = os.environ.get("DISPLAY", ":0")
    return Session(user, os.getuid(), os.path.expanduser("~"), display)


def wait_for_login(timeout=LOGIN_WAIT_SECONDS, interval=LOGIN_POLL_SECONDS,
                   run=run_command, sleep=time.sleep) -> Session:
    """Poll for a graphical login. Exhausting the wait aborts the run."""
    waited = 0
    while waited < timeout:
        session = find_graphical_session(run)
        if session:
            logging.info(f"User {session.user} logged in after {waited} seconds")
            return session
        sleep(interval)
        waited += interval
    raise NoSessionError(f"No user logged in after {timeout} seconds, aborting")


def wait_for_bus_socket(session, timeout, interval=BUS_POLL_SECONDS,
                        exists=os.path.exists, sleep=time.sleep):
    """Wait for the per-user bus socket. Returns False when it never showed up."""
    waited = 0
    logging.debug(f"Checking DBUS socket: {session.bus_socket} (timeout: {timeout}s)")
    while not exists(session.bus_socket) and waited < timeout:
        logging.debug(f"Waiting for DBUS socket... ({waited}/{timeout}s)")
        sleep(interval)
        waited += interval
    if exists(session.bus_socket):
        return True
    logging.warning(f"DBUS socket not found after {timeout} seconds. Continuing anyway.")
    logging.info("HINT: Increase DBUS_TIMEOUT in the jackhub config if this happens frequently.")
    return False


# ==== CONTEXT SWITCH ====
def run_as_user(session, subcommand, run=run_command):
    """Re-run a jackhub subcommand in the user's context through runuser."""
    env_args = [f"{key}={value}" for key, value in session.environment().items()]
    argv = ["runuser", "-u", session.user, "--", "env", *env_args,
            sys.executable, "-m", "jackhub", subcommand]
    logging.info(f"Running '{subcommand}' as user {session.user} (ID: {session.uid})")
    code, output = run(argv)
    for line in output.splitlines():
        logging.info(f"[{session.user}] {line}")
    return code
