#!/usr/bin/env python3

import glob
import logging
import os
import shutil
import time

import mido
import psutil

from jackbus import JackHubError, MissingToolError, RetryPolicy, a2j_control, jack_control, run_command
from jackcards import DeviceIdentity, aplay_listing, detect_external, is_available

# ==== CONFIGURATION ====
JACK_PROCESSES = ("jackdbus", "jackd")
BRIDGE_PROCESS = "a2jmidid"
RUNTIME_ARTIFACTS = ("/tmp/jack-*-{uid}", "/dev/shm/jack-*-{uid}")

RECONFIGURE_PAUSE = 1
BRIDGE_SETTLE = 1
STOP_GRACE = 2
KILL_GRACE = 1
PHASE_PAUSE = 2

REQUIRED_TOOLS = ("jack_control",)
PROBE_CLIENT_NAME = "jackhub_probe"


class NoDeviceError(JackHubError):
    pass


class JackStartError(JackHubError):
    pass


def require_tools(tools=REQUIRED_TOOLS, which=None):
    which = which or shutil.which
    for tool in tools:
        if not which(tool):
            raise MissingToolError(f"Required tool not found: {tool}")


# ==== DEVICE SELECTION ====
def select_device(config, listing=None, run=run_command) -> DeviceIdentity:
    """Honor a pinned device while it is present, otherwise auto-detect.

    The override only lasts for this run, the config file is never rewritten.
    """
    if listing is None:
        listing = aplay_listing(run)
    if config.pinned:
        pinned = DeviceIdentity.from_path(config.audio_device, config.device_pattern or None)
        if is_available(pinned, listing):
            logging.info(f"Using configured audio device: {config.audio_device}")
            return pinned
        logging.warning(f"Configured device {config.audio_device} not available, auto-detecting...")
        detected = detect_external(listing)
        if detected:
            logging.info(f"Auto-detected audio device: {detected.device_path} "
                         f"(config had: {config.audio_device})")
            return detected
    else:
        detected = detect_external(listing)
        if detected:
            logging.info(f"Auto-detected audio device: {detected.device_path}")
            return detected
    raise NoDeviceError("No audio interface found. Please connect a USB audio device.")


# ==== PROCESSES ====
def find_processes(name, uid=None):
    found = []
    for proc in psutil.process_iter(["name", "uids"]):
        info = proc.info
        if info.get("name") != name:
            continue
        uids = info.get("uids")
        if uid is not None and uids is not None and uids.real != uid:
            continue
        found.append(proc)
    return found


def signal_processes(names, uid=None, grace=KILL_GRACE, force=False):
    """Terminate (or kill) matching processes, return those still alive after grace."""
    procs = [proc for name in names for proc in find_processes(name, uid)]
    if not procs:
        return []
    for proc in procs:
        try:
            if force:
                proc.kill()
            else:
                proc.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logging.debug(f"Could not signal {proc.pid}: {e}")
    _, alive = psutil.wait_procs(procs, timeout=grace)
    return alive


def remove_runtime_artifacts(uid):
    removed = 0
    for pattern in RUNTIME_ARTIFACTS:
        for path in glob.glob(pattern.format(uid=uid)):
            try:
                if os.path.isdir(path) and not os.path.islink(path):
                    shutil.rmtree(path)
                else:
                    os.remove(path)
                removed += 1
            except OSError as e:
                logging.debug(f"Could not remove {path}: {e}")
    return removed


def bridge_priority(uid=None):
    """'realtime', 'normal' or None when a2jmidid is not running."""
    procs = find_processes(BRIDGE_PROCESS, uid)
    if not procs:
        return None
    try:
        policy = os.sched_getscheduler(procs[0].pid)
    except OSError:
        return None
    return "realtime" if policy in (os.SCHED_FIFO, os.SCHED_RR) else "normal"


# ==== JACK / MIDI PROBES ====
def get_physical_ports(client):
    capture = client.get_ports(is_physical=True, is_output=True, is_audio=True)
    playback = client.get_ports(is_physical=True, is_input=True, is_audio=True)
    return [p.name for p in capture], [p.name for p in playback]


def describe_physical_ports():
    """Count physical ports through a probe client; never starts a server."""
    try:
        import jack
    except (ImportError, OSError) as e:
        logging.warning(f"JACK-Client not usable ({e}); skipping port probe.")
        return None
    try:
        client = jack.Client(PROBE_CLIENT_NAME, no_start_server=True)
    except jack.JackError as e:
        logging.warning(f"JACK probe client failed: {e}")
        return None
    try:
        capture, playback = get_physical_ports(client)
    finally:
        client.close()
    logging.info(f"JACK physical ports: {len(capture)} capture, {len(playback)} playback")
    return len(capture), len(playback)


def filter_device_names(devices):
    filtered = []
    for name in devices:
        if "Through" in name:
            continue
        base = name.split(":")[0].strip()
        base = base.split("[")[0].strip()
        if base not in filtered:
            filtered.append(base)
    return filtered


def bridge_midi_inputs():
    try:
        names = mido.get_input_names()
    except Exception as e:
        logging.debug(f"MIDI input listing failed: {e}")
        return []
    devices = filter_device_names(names)
    if devices:
        logging.info(f"MIDI inputs available to the bridge: {devices}")
    else:
        logging.info("No MIDI inputs found for the bridge.")
    return devices


# ==== LIFECYCLE ====
class JackLifecycle:
    """Drives jackdbus and a2jmidid into the state a run asks for.

    State is never remembered between calls: every decision starts with a
    status query against the control surfaces.
    """

    def __init__(self, run=run_command, sleep=time.sleep, uid=None, any_user=False):
        self.run = run
        self.sleep = sleep
        self.artifact_uid = os.getuid() if uid is None else uid
        # uid None matches processes of every user (root teardown without a session)
        self.uid = None if any_user else self.artifact_uid

    def jack(self, *args, policy=None):
        return jack_control(*args, run=self.run, sleep=self.sleep, policy=policy)

    def a2j(self, *args):
        return a2j_control(*args, run=self.run, sleep=self.sleep)

    def jack_running(self):
        result = self.jack("status")
        return result.ok and "started" in result.output.lower()

    def bridge_active(self):
        result = self.a2j("--status")
        return result.ok and "bridging enabled" in result.output.lower()

    def ensure_configured(self, config, device):
        if self.jack_running():
            logging.info("JACK is running - stopping for parameter configuration...")
            self.jack("stop")
            self.sleep(RECONFIGURE_PAUSE)

        params = config.params
        logging.info(f"Configuring JACK: Device={device.device_path}, Rate={params.sample_rate}, "
                     f"Periods={params.periods_count}, Period={params.buffer_frames}")
        steps = [
            (("ds", "alsa"), "driver to ALSA"),
            (("dps", "device", device.device_path), "device"),
            (("dps", "rate", params.sample_rate), "sample rate"),
            (("dps", "nperiods", params.periods_count), "nperiods"),
            (("dps", "period", params.buffer_frames), "period"),
        ]
        failed = []
        for args, what in steps:
            if not self.jack(*args).ok:
                logging.warning(f"Failed to set JACK {what}")
                failed.append(what)

        logging.info("Starting JACK server...")
        result = self.jack("start")
        if not result.ok:
            if result.bus_unavailable:
                raise JackStartError("JACK server could not be started (DBus communication failed)")
            raise JackStartError(f"JACK server could not be started: {result.output.strip()}")
        if not self.jack_running():
            raise JackStartError("JACK server is not running correctly")
        logging.info("JACK server started successfully")
        describe_physical_ports()
        return failed

    def ensure_bridge(self, enabled):
        if not enabled:
            logging.info("A2J MIDI Bridge disabled by configuration")
            # pgrep-style check only, a disabled bridge must not wake the bus
            if find_processes(BRIDGE_PROCESS, self.uid):
                logging.info("Stopping A2J MIDI Bridge as it's disabled in config")
                signal_processes([BRIDGE_PROCESS], self.uid)
            return False

        logging.info("Starting ALSA-MIDI Bridge with --export-hw...")
        if self.bridge_active():
            logging.info("A2J MIDI Bridge is already active.")
            return True
        if not self.a2j("--ehw").ok:
            logging.info("Hardware export possibly already enabled")
        if not self.a2j("--start").ok:
            logging.info("A2J MIDI Bridge could not be started, possibly already active")
        self.sleep(BRIDGE_SETTLE)
        priority = bridge_priority(self.uid)
        if priority == "realtime":
            logging.info("A2J is running with Real-Time priority")
        elif priority == "normal":
            logging.info("A2J is running without Real-Time priority - this is normal")
        bridge_midi_inputs()
        return True

    def shutdown_all(self):
        if signal_processes([BRIDGE_PROCESS], self.uid):
            logging.debug("a2jmidid ignored SIGTERM, killed later")
        # single attempt: teardown must not wait on the bus
        self.jack("stop", policy=RetryPolicy(max_attempts=1))
        self.sleep(STOP_GRACE)

        names = JACK_PROCESSES + (BRIDGE_PROCESS,)
        survivors = signal_processes(names, self.uid)
        if survivors:
            logging.info("Force terminating remaining processes...")
            signal_processes(names, self.uid, force=True)

        removed = remove_runtime_artifacts(self.artifact_uid)
        if removed:
            logging.debug(f"Removed {removed} JACK runtime files")
        self.sleep(PHASE_PAUSE)
        logging.info("JACK server completely stopped and cleaned up")

    def restart(self, config, device):
        logging.info("Phase 1: Shutting down JACK server...")
        self.shutdown_all()
        self.sleep(PHASE_PAUSE)
        logging.info("Phase 2: Starting JACK server...")
        self.ensure_configured(config, device)
        self.ensure_bridge(config.params.midi_bridge_enabled)


def report(config, device):
    params = config.params
    print("")
    print("=== JACK Audio System Started Successfully ===")
    print(f"Audio Device: {device.device_path}")
    print(f"Configuration: {params.describe()}")
    print(f"  Sample Rate: {params.sample_rate} Hz")
    print(f"  Buffer Size: {params.buffer_frames} frames")
    print(f"  Periods: {params.periods_count}")
    print(f"  Latency: ~{params.latency_ms:.2f} ms")
    print(f"  A2J MIDI Bridge: {params.midi_bridge_enabled}")
    print("==============================================")
    logging.info(f"JACK Audio System started successfully: Device={device.device_path}, "
                 f"{params.describe()} (A2J: {params.midi_bridge_enabled})")
