#!/usr/bin/env python3

import getpass
import logging
import os
import pwd
from dataclasses import dataclass, field
from typing import Dict, Optional

from jackbus import run_command

# ==== CONFIGURATION ====
SYSTEM_CONFIG_FILE = "/etc/jackhub/jack-setting.conf"
USER_CONFIG_RELPATH = os.path.join(".config", "jackhub", "jack-setting.conf")

DEFAULT_RATE = 48000
DEFAULT_PERIOD = 256
DEFAULT_NPERIODS = 3
DEFAULT_A2J_ENABLE = False
DEFAULT_AUDIO_DEVICE = "hw:0,0"
DEFAULT_DEVICE_PATTERN = ""
DEFAULT_DBUS_TIMEOUT = 30

# Legacy JACK_SETTING presets: (rate, period, nperiods)
PRESETS = {
    "1": (48000, 128, 2),  # low latency
    "2": (48000, 256, 2),  # medium latency
    "3": (48000, 64, 2),   # ultra-low latency
}

VALID_RATES = (22050, 44100, 48000, 88200, 96000, 176400, 192000)
PERIOD_RANGE = (16, 8192)
NPERIODS_RANGE = (2, 8)

CURRENT_KEYS = (
    "AUDIO_DEVICE",
    "DEVICE_PATTERN",
    "JACK_RATE",
    "JACK_PERIOD",
    "JACK_NPERIODS",
    "A2J_ENABLE",
    "DBUS_TIMEOUT",
)
LEGACY_KEY = "JACK_SETTING"

# key -> field of the effective config
FIELDS = {
    "AUDIO_DEVICE": "audio_device",
    "DEVICE_PATTERN": "device_pattern",
    "JACK_RATE": "sample_rate",
    "JACK_PERIOD": "buffer_frames",
    "JACK_NPERIODS": "periods_count",
    "A2J_ENABLE": "midi_bridge_enabled",
    "DBUS_TIMEOUT": "dbus_timeout",
}
INTEGER_FIELDS = ("sample_rate", "buffer_frames", "periods_count", "dbus_timeout")

TRUE_VALUES = ("true", "yes", "1", "on")


# ==== VALUE OBJECTS ====
@dataclass(frozen=True)
class AudioParameters:
    sample_rate: int = DEFAULT_RATE
    buffer_frames: int = DEFAULT_PERIOD
    periods_count: int = DEFAULT_NPERIODS
    midi_bridge_enabled: bool = DEFAULT_A2J_ENABLE

    @property
    def latency_ms(self):
        return self.buffer_frames * self.periods_count * 1000 / self.sample_rate

    def describe(self):
        return (f"Custom ({self.sample_rate}Hz, {self.periods_count}x{self.buffer_frames}, "
                f"~{self.latency_ms:.2f}ms)")


@dataclass(frozen=True)
class EffectiveConfig:
    params: AudioParameters = field(default_factory=AudioParameters)
    audio_device: str = DEFAULT_AUDIO_DEVICE
    device_pattern: str = DEFAULT_DEVICE_PATTERN
    dbus_timeout: int = DEFAULT_DBUS_TIMEOUT
    sources: Dict[str, str] = field(default_factory=dict)
    source: str = "defaults"
    user: Optional[str] = None
    user_config_file: Optional[str] = None

    @property
    def pinned(self):
        return bool(self.audio_device) and self.audio_device != DEFAULT_AUDIO_DEVICE


# ==== CONFIG FILE READING ====
def read_config_file(path):
    """Parse KEY=value lines. A missing or unreadable file gives {}.

    Keys with an empty value are kept: they still decide the dialect.
    """
    values = {}
    try:
        with open(path, "r") as f:
            lines = f.read().splitlines()
    except OSError:
        return values
    for line in lines:
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.replace(" ", "").strip().strip('"').strip("'")
        if key and key not in values:
            values[key] = value
    return values


def is_current_dialect(values):
    return any(key in values for key in CURRENT_KEYS)


def is_legacy_dialect(values):
    return not is_current_dialect(values) and bool(values.get(LEGACY_KEY))


def legacy_preset(setting):
    rate, period, nperiods = PRESETS.get(str(setting).strip(), PRESETS["1"])
    return {"sample_rate": rate, "buffer_frames": period, "periods_count": nperiods}


def parse_bool(value):
    return str(value).strip().lower() in TRUE_VALUES


def _convert(key, raw, label):
    name = FIELDS[key]
    if name in INTEGER_FIELDS:
        try:
            value = int(raw)
        except ValueError:
            logging.warning(f"Ignoring non-numeric {key}={raw!r} from {label}")
            return name, None
        # a zero rate or period cannot describe a latency
        minimum = 0 if name == "dbus_timeout" else 1
        if value < minimum:
            logging.warning(f"Ignoring non-positive {key}={raw!r} from {label}")
            return name, None
        return name, value
    if name == "midi_bridge_enabled":
        return name, parse_bool(raw)
    return name, raw


def layer_from_values(values, label):
    """Partial config contributed by one file or the environment."""
    layer = {}
    if is_current_dialect(values):
        for key in CURRENT_KEYS:
            if values.get(key):
                name, value = _convert(key, values[key], label)
                if value is not None:
                    layer[name] = value
    elif is_legacy_dialect(values):
        layer.update(legacy_preset(values[LEGACY_KEY]))
    return layer


def environment_layer(environ):
    values = {key: environ[key] for key in CURRENT_KEYS if environ.get(key)}
    layer = {}
    for key, raw in values.items():
        name, value = _convert(key, raw, "environment")
        if value is not None:
            layer[name] = value
    if environ.get(LEGACY_KEY) and not environ.get("JACK_RATE"):
        layer.update(legacy_preset(environ[LEGACY_KEY]))
    return layer


# ==== USER DETECTION ====
def session_user_from_who(who_output):
    for line in (who_output or "").splitlines():
        if "(:" in line:
            parts = line.split()
            if parts:
                return parts[0]
    return None


def detect_real_user(environ=None, current_user=None, who_output=None, run=run_command):
    """The login user whose config applies, not the (often root) invoker."""
    environ = os.environ if environ is None else environ
    sudo_user = environ.get("SUDO_USER")
    if sudo_user and sudo_user != "root":
        return sudo_user
    if current_user is None:
        current_user = getpass.getuser()
    if current_user != "root":
        return current_user
    if who_output is None:
        code, who_output = run(["who"])
        if code != 0:
            return None
    return session_user_from_who(who_output)


def home_of(user):
    try:
        return pwd.getpwnam(user).pw_dir
    except KeyError:
        return os.path.join("/home", user)


def user_config_path(user, environ=None):
    environ = os.environ if environ is None else environ
    if user and user != "root":
        return os.path.join(home_of(user), USER_CONFIG_RELPATH)
    return os.path.join(environ.get("HOME", "/root"), USER_CONFIG_RELPATH)


# ==== RESOLUTION ====
def resolve(environ=None, system_file=None, user_file=None, user=None,
            run=run_command) -> EffectiveConfig:
    """Merge defaults < system file < user file < environment."""
    environ = os.environ if environ is None else environ
    system_file = system_file or SYSTEM_CONFIG_FILE
    if user is None:
        user = detect_real_user(environ, run=run)
    if user_file is None:
        user_file = user_config_path(user, environ)

    merged = {
        "sample_rate": DEFAULT_RATE,
        "buffer_frames": DEFAULT_PERIOD,
        "periods_count": DEFAULT_NPERIODS,
        "midi_bridge_enabled": DEFAULT_A2J_ENABLE,
        "audio_device": DEFAULT_AUDIO_DEVICE,
        "device_pattern": DEFAULT_DEVICE_PATTERN,
        "dbus_timeout": DEFAULT_DBUS_TIMEOUT,
    }
    sources = {name: "defaults" for name in merged}
    source = "defaults"

    layers = [
        (f"system config ({system_file})", layer_from_values(read_config_file(system_file), system_file)),
        (f"user config ({user_file})", layer_from_values(read_config_file(user_file), user_file)),
        ("environment variables", environment_layer(environ)),
    ]
    for label, layer in layers:
        if not layer:
            continue
        logging.info(f"Loaded {label}: {layer}")
        merged.update(layer)
        for name in layer:
            sources[name] = label
        source = label

    params = AudioParameters(
        sample_rate=merged["sample_rate"],
        buffer_frames=merged["buffer_frames"],
        periods_count=merged["periods_count"],
        midi_bridge_enabled=merged["midi_bridge_enabled"],
    )
    config = EffectiveConfig(
        params=params,
        audio_device=merged["audio_device"],
        device_pattern=merged["device_pattern"],
        dbus_timeout=merged["dbus_timeout"],
        sources=sources,
        source=source,
        user=user,
        user_config_file=user_file,
    )
    validate(config)
    log_config_debug(config, system_file)
    return config


def validate(config):
    """Warn about unusual values. Never rejects: availability wins here."""
    warnings = []
    params = config.params
    if params.sample_rate not in VALID_RATES:
        warnings.append(f"Unusual sample rate {params.sample_rate} - using anyway")
    if not PERIOD_RANGE[0] <= params.buffer_frames <= PERIOD_RANGE[1]:
        warnings.append(f"Period {params.buffer_frames} outside typical range "
                        f"({PERIOD_RANGE[0]}-{PERIOD_RANGE[1]})")
    if not NPERIODS_RANGE[0] <= params.periods_count <= NPERIODS_RANGE[1]:
        warnings.append(f"Nperiods {params.periods_count} outside typical range "
                        f"({NPERIODS_RANGE[0]}-{NPERIODS_RANGE[1]})")
    for message in warnings:
        logging.warning(message)
    return warnings


def log_config_debug(config, system_file=SYSTEM_CONFIG_FILE):
    params = config.params
    logging.debug(f"CONFIG - ACTUAL_USER: {config.user or 'unset'}")
    logging.debug(f"CONFIG - USER_CONFIG_FILE: {config.user_config_file}")
    logging.debug(f"CONFIG - SYSTEM_CONFIG_FILE: {system_file}")
    logging.debug(f"CONFIG - Config source: {config.source}")
    for name, label in sorted(config.sources.items()):
        logging.debug(f"CONFIG - {name} from {label}")
    logging.debug(f"CONFIG - Audio Device: {config.audio_device}")
    logging.debug(f"CONFIG - Device Pattern: {config.device_pattern or '<none>'}")
    logging.debug(f"CONFIG - Final config: Rate={params.sample_rate}, Period={params.buffer_frames}, "
                  f"Nperiods={params.periods_count}, A2J={params.midi_bridge_enabled}")
    logging.debug(f"CONFIG - Calculated latency: {params.latency_ms:.2f}ms")
