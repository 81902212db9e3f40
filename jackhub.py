#!/usr/bin/env python3

import argparse
import logging
import os
import sys
import time

import jackconf
from jackbus import JackHubError, run_command
from jackcards import any_external_present
from jacksession import (
    TRIGGER_FLAG,
    FlagStore,
    NoSessionError,
    current_session,
    find_graphical_session,
    is_root,
    run_as_user,
    runtime_dir,
    wait_for_bus_socket,
    wait_for_login,
)
from jackup import JackLifecycle, JackStartError, report, require_tools, select_device

# ==== CONFIGURATION ====
DEBOUNCE_SECONDS = 2
SETTLE_SECONDS = 2
DEBOUNCE_LOCK = "udev-add.lock"

LOG_FILES = {
    "udev": "jack-udev-handler.log",
    "login-check": "jack-login-check.log",
    "restart": "jack-restart.log",
    "autostart": "jack-autostart.log",
    "init": "jack-init.log",
    "shutdown": "jack-shutdown.log",
}


# ==== LOGGING ====
def setup_logging(context):
    level_name = os.environ.get("JACKHUB_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    handlers = [logging.StreamHandler()]
    log_dir = os.environ.get("JACKHUB_LOG_DIR") or runtime_dir()
    log_file = os.path.join(log_dir, LOG_FILES.get(context, "jackhub.log"))
    try:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(
            f"%(asctime)s [%(levelname)s] {context}: %(message)s", "%Y-%m-%d %H:%M:%S"))
        handlers.append(file_handler)
    except OSError:
        log_file = None
    logging.basicConfig(level=level, format="%(levelname)s:%(message)s", handlers=handlers, force=True)
    if log_file is None:
        logging.warning(f"Cannot write log file in {log_dir}; logging to stderr only")


# ==== DEBOUNCE ====
def recently_triggered(lockfile, now=None):
    """True when another add event fired within DEBOUNCE_SECONDS."""
    now = time.time() if now is None else now
    if os.path.exists(lockfile):
        last = os.path.getmtime(lockfile)
        if now - last < DEBOUNCE_SECONDS:
            logging.info("Debounced: handler triggered too recently.")
            return True
    try:
        with open(lockfile, "w") as f:
            f.write(str(now))
        os.utime(lockfile, (now, now))
    except OSError as e:
        logging.warning(f"Debounce lock error: {e}")
    return False


# ==== USER CONTEXT OPERATIONS ====
def init(config=None, run=run_command, sleep=time.sleep):
    require_tools()
    if config is None:
        config = jackconf.resolve(run=run)
    device = select_device(config, run=run)
    lifecycle = JackLifecycle(run=run, sleep=sleep)
    logging.info("Checking JACK status...")
    lifecycle.ensure_configured(config, device)
    lifecycle.ensure_bridge(config.params.midi_bridge_enabled)
    report(config, device)
    return 0


def restart(run=run_command, sleep=time.sleep):
    logging.info("=== JACK Server Restart started ===")
    if is_root():
        session = find_graphical_session(run)
        if session is None:
            raise NoSessionError("No active user detected - cannot restart JACK")
        logging.info(f"Detected user: {session.user} (ID: {session.uid})")
        code = run_as_user(session, "restart", run=run)
        if code != 0:
            raise JackStartError(f"Restart as {session.user} failed (exit code {code})")
        return 0

    require_tools()
    config = jackconf.resolve(run=run)
    # device first: a missing interface must leave the running server alone
    device = select_device(config, run=run)
    JackLifecycle(run=run, sleep=sleep).restart(config, device)
    report(config, device)
    logging.info("=== RESTART COMPLETED SUCCESSFULLY ===")
    return 0


def shutdown(run=run_command, sleep=time.sleep):
    logging.info("Audio Interface removed - Shutting down JACK")
    if is_root():
        session = find_graphical_session(run)
        if session is not None:
            logging.info(f"Stopping JACK for user: {session.user}")
            code = run_as_user(session, "shutdown", run=run)
            if code != 0:
                raise JackHubError(f"Shutdown as {session.user} failed (exit code {code})")
            return 0
        logging.warning("No active user detected - trying to continue anyway")
        JackLifecycle(run=run, sleep=sleep, any_user=True).shutdown_all()
        return 0
    JackLifecycle(run=run, sleep=sleep).shutdown_all()
    return 0


def autostart(run=run_command, sleep=time.sleep):
    """Start JACK for the logged-in user once their session bus is up."""
    if is_root():
        session = find_graphical_session(run)
        if session is None:
            raise NoSessionError("No active user detected - cannot start JACK")
        logging.info(f"Detected active user: {session.user} (DISPLAY={session.display})")
        config = jackconf.resolve(user=session.user, run=run)
        wait_for_bus_socket(session, config.dbus_timeout, sleep=sleep)
        logging.info(f"Starting JACK for user: {session.user} (ID: {session.uid})")
        code = run_as_user(session, "init", run=run)
        if code != 0:
            raise JackStartError(f"JACK init as {session.user} failed (exit code {code})")
        logging.info("JACK startup command completed")
        return 0

    session = current_session(run)
    logging.info(f"User: {session.user} (ID: {session.uid})")
    config = jackconf.resolve(run=run)
    wait_for_bus_socket(session, config.dbus_timeout, sleep=sleep)
    os.environ.update({
        "DISPLAY": session.display,
        "DBUS_SESSION_BUS_ADDRESS": f"unix:path={session.bus_socket}",
        "XDG_RUNTIME_DIR": session.runtime_dir,
    })
    return init(config, run=run, sleep=sleep)


# ==== EVENT HANDLERS ====
def on_device_added(run=run_command, sleep=time.sleep, flags=None):
    flags = flags or FlagStore()
    logging.info("Sound controller added, checking for audio interface...")
    if recently_triggered(flags.path(DEBOUNCE_LOCK)):
        return 0

    session = find_graphical_session(run)
    if session is None:
        logging.info("No user logged in, creating trigger file")
        flags.set(TRIGGER_FLAG)
        return 0

    sleep(SETTLE_SECONDS)
    if not any_external_present(run=run):
        logging.info("No external audio interface found (internal devices filtered)")
        return 0
    logging.info(f"Audio interface found, user {session.user} logged in, starting JACK")
    try:
        autostart(run=run, sleep=sleep)
    except JackHubError as e:
        logging.error(f"Autostart failed: {e}")
    return 0


def on_device_removed(run=run_command, sleep=time.sleep, flags=None):
    flags = flags or FlagStore()
    logging.info("Sound device removed, checking for audio interface...")
    flags.clear(TRIGGER_FLAG)

    session = find_graphical_session(run)
    if session is None:
        logging.info("No user logged in, skipping JACK check")
        return 0

    sleep(SETTLE_SECONDS)
    if any_external_present(run=run):
        logging.info("Another external audio device still available, restarting JACK with new device")
        try:
            autostart(run=run, sleep=sleep)
        except JackHubError as e:
            logging.error(f"Autostart failed: {e}")
        return 0
    logging.info(f"No external audio interface remaining, user {session.user} logged in, stopping JACK")
    try:
        shutdown(run=run, sleep=sleep)
    except JackHubError as e:
        logging.error(f"Shutdown failed: {e}")
    return 0


def handle_udev(action, kernel, run=run_command, sleep=time.sleep, flags=None):
    logging.info(f"UDEV handler called: ACTION={action} KERNEL={kernel}")
    if action == "add" and kernel.startswith("controlC"):
        code = on_device_added(run=run, sleep=sleep, flags=flags)
    elif action == "remove" and kernel.startswith("card"):
        code = on_device_removed(run=run, sleep=sleep, flags=flags)
    else:
        logging.debug("Event not handled")
        code = 0
    logging.info("UDEV handler completed")
    return code


def login_check(run=run_command, sleep=time.sleep, flags=None):
    """Start JACK for a device that was plugged in before anyone logged in."""
    flags = flags or FlagStore()
    logging.info("Login check: Waiting for user login...")
    wait_for_login(run=run, sleep=sleep)

    if not flags.is_set(TRIGGER_FLAG):
        logging.debug("Login check: No device trigger file found")
        logging.info("Login check: Completed")
        return 0

    logging.debug("Login check: Device trigger file found, checking hardware")
    try:
        if any_external_present(run=run):
            logging.info("Login check: External audio interface detected, starting JACK")
            autostart(run=run, sleep=sleep)
        else:
            logging.warning("Login check: No external audio interface found (internal devices filtered)")
    finally:
        flags.clear(TRIGGER_FLAG)
        logging.debug("Login check: Trigger file removed")
    logging.info("Login check: Completed")
    return 0


# ==== MAIN LOGIC ====
def build_parser():
    parser = argparse.ArgumentParser(
        prog="jackhub", description="Drive JACK from USB audio interface hot-plug events.")
    commands = parser.add_subparsers(dest="command", required=True)

    udev = commands.add_parser("udev", help="handle a udev sound event (root)")
    udev.add_argument("action", help="udev ACTION, e.g. add or remove")
    udev.add_argument("kernel", help="udev KERNEL name, e.g. controlC1 or card1")
    udev.set_defaults(func=lambda args, run, sleep: handle_udev(args.action, args.kernel, run, sleep))

    simple = {
        "login-check": ("start JACK for a device connected before login", login_check),
        "restart": ("stop and start JACK with the current settings", restart),
        "autostart": ("wait for the session bus, then init", autostart),
        "init": ("configure and start JACK in the current user context", init),
        "shutdown": ("stop JACK and the MIDI bridge", shutdown),
    }
    for name, (help_text, handler) in simple.items():
        sub = commands.add_parser(name, help=help_text)
        sub.set_defaults(func=lambda args, run, sleep, handler=handler: handler(run=run, sleep=sleep))
    return parser


def main(argv=None, run=None, sleep=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.command)
    try:
        return args.func(args, run or run_command, sleep or time.sleep)
    except JackHubError as e:
        logging.error(str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
