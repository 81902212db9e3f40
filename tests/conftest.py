"""Shared fixtures: a scripted stand-in for the host tools and an isolated runtime.

Nothing here touches real audio hardware, jackdbus or the session bus.
"""

import logging

import pytest

import jackconf
import jackhub
import jackup

# =============================================================================
# Recorded tool output
# =============================================================================

INTERNAL_ONLY = """\
**** List of PLAYBACK Hardware Devices ****
card 0: PCH [HDA Intel PCH], device 0: ALC892 Analog [ALC892 Analog]
  Subdevices: 1/1
  Subdevice #0: subdevice #0
card 0: PCH [HDA Intel PCH], device 3: HDMI 0 [HDMI 0]
  Subdevices: 1/1
  Subdevice #0: subdevice #0
"""

FOCUSRITE = INTERNAL_ONLY + """\
card 1: Focusrite [Scarlett 2i2 USB], device 0: USB Audio [USB Audio]
  Subdevices: 1/1
  Subdevice #0: subdevice #0
"""

FOCUSRITE_AND_M4 = FOCUSRITE + """\
card 2: M4 [MOTU M4], device 0: USB Audio [USB Audio]
  Subdevices: 1/1
  Subdevice #0: subdevice #0
"""

# root always exists in the password database of a test host
WHO_SESSION = "root     tty7         2026-10-19 08:00 (:0)\n"
WHO_NOBODY = ""


class FakeSystem:
    """Callable with the run_command signature that simulates the host tools.

    jack_control and a2j_control keep a little state so a start is visible to
    the next status query. Scripted responses take precedence and are consumed
    in order.
    """

    def __init__(self, listing=FOCUSRITE, who=WHO_SESSION):
        self.listing = listing
        self.who = who
        self.jack_started = False
        self.bridge_enabled = False
        self.calls = []
        self.sleeps = []
        self.scripted = {}

    def script(self, argv, *responses):
        self.scripted.setdefault(tuple(argv), []).extend(responses)

    def sleep(self, seconds):
        self.sleeps.append(seconds)

    def __call__(self, argv, env=None, timeout=None):
        argv = [str(a) for a in argv]
        self.calls.append(argv)
        pending = self.scripted.get(tuple(argv))
        if pending:
            return pending.pop(0)
        tool = argv[0]
        if tool == "aplay":
            return 0, self.listing
        if tool == "who":
            return 0, self.who
        if tool == "jack_control":
            return self._jack(argv[1:])
        if tool == "a2j_control":
            return self._a2j(argv[1:])
        if tool == "runuser":
            return 0, "JACK Audio System started\n"
        return 127, f"{tool}: command not found"

    def _jack(self, args):
        command = args[0] if args else ""
        if command == "status":
            return 0, "--- status\n" + ("started\n" if self.jack_started else "stopped\n")
        if command == "start":
            self.jack_started = True
            return 0, "--- start\n"
        if command == "stop":
            self.jack_started = False
            return 0, "--- stop\n"
        return 0, f"--- {' '.join(args)}\n"

    def _a2j(self, args):
        command = args[0] if args else ""
        if command == "--status":
            return 0, "bridging enabled\n" if self.bridge_enabled else "bridging disabled\n"
        if command == "--start":
            self.bridge_enabled = True
        return 0, ""

    def commands(self, tool):
        return [call[1:] for call in self.calls if call[0] == tool]


class FakeHost:
    """Process table and probes seen by jackup."""

    def __init__(self):
        self.processes = {}
        self.signalled = []
        self.survivors = []
        self.probed = 0
        self.cleaned = []

    def find_processes(self, name, uid=None):
        return list(self.processes.get(name, []))

    def signal_processes(self, names, uid=None, grace=None, force=False):
        self.signalled.append((tuple(names), force))
        return [] if force else list(self.survivors)

    def remove_runtime_artifacts(self, uid):
        self.cleaned.append(uid)
        return 0

    def describe_physical_ports(self):
        self.probed += 1
        return 2, 2


# =============================================================================
# Isolation
# =============================================================================

CONFIG_VARIABLES = jackconf.CURRENT_KEYS + (jackconf.LEGACY_KEY, "SUDO_USER", "JACKHUB_LOG_LEVEL")


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    """Keep every test away from /etc, /run and the real login session."""
    for name in CONFIG_VARIABLES:
        monkeypatch.delenv(name, raising=False)
    # autostart exports the session variables into os.environ
    monkeypatch.setenv("DISPLAY", ":0")
    monkeypatch.setenv("DBUS_SESSION_BUS_ADDRESS", "unix:path=/nonexistent/bus")
    monkeypatch.setenv("XDG_RUNTIME_DIR", str(tmp_path))

    runtime = tmp_path / "run"
    runtime.mkdir()
    monkeypatch.setenv("JACKHUB_RUNTIME_DIR", str(runtime))
    monkeypatch.setenv("JACKHUB_LOG_DIR", str(runtime))

    monkeypatch.setattr(jackconf, "SYSTEM_CONFIG_FILE", str(tmp_path / "system.conf"))
    monkeypatch.setattr(jackconf, "user_config_path",
                        lambda user, environ=None: str(tmp_path / "user.conf"))
    monkeypatch.setattr(jackhub, "is_root", lambda: False)
    monkeypatch.setattr(jackup.shutil, "which", lambda tool: f"/usr/bin/{tool}")

    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield tmp_path
    # main() reconfigures the root logger with force=True
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


@pytest.fixture
def host(monkeypatch):
    fake_host = FakeHost()
    monkeypatch.setattr(jackup, "find_processes", fake_host.find_processes)
    monkeypatch.setattr(jackup, "signal_processes", fake_host.signal_processes)
    monkeypatch.setattr(jackup, "describe_physical_ports", fake_host.describe_physical_ports)
    monkeypatch.setattr(jackup, "bridge_midi_inputs", lambda: [])
    monkeypatch.setattr(jackup, "remove_runtime_artifacts", fake_host.remove_runtime_artifacts)
    return fake_host


@pytest.fixture
def fake(host):
    return FakeSystem()


@pytest.fixture
def system_config(isolated):
    return isolated / "system.conf"


@pytest.fixture
def user_config(isolated):
    return isolated / "user.conf"


@pytest.fixture
def runtime(isolated):
    return isolated / "run"
