from __future__ import annotations

import getpass
import logging
import os
import stat
import sys
from importlib.resources import files
from pathlib import Path

from fiscalbridge.models.activity import ActivityLogEntry
from fiscalbridge.utils.formatters import format_amount, format_timestamp

_ICONS = {"success": "[ok]", "error": "[!!]", "info": "[--]"}

_HELP = """Commands:
  open-day     open the fiscal day
  close-day    close the fiscal day
  force-sync   probe the backend now and re-queue unfinished invoices
  status       show backend, fiscal day and queue status
  config       show local and backend configuration
  log          show the activity log
  quit         stop the bridge"""


def _configure_logging() -> None:
    level = os.environ.get("FISCALBRIDGE_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _check_keyring_available() -> bool:
    """Check if keyring is installed with a usable backend."""
    try:
        import keyring
        from keyring.backends.fail import Keyring as FailKeyring

        return not isinstance(keyring.get_keyring(), FailKeyring)
    except Exception:
        return False


def _upsert_env_var(env_file: Path, key: str, value: str) -> None:
    """Set or update a key=value pair in a .env file, creating it if needed."""
    from dotenv import set_key

    env_file.parent.mkdir(parents=True, exist_ok=True)
    if not env_file.exists():
        env_file.touch()
    set_key(str(env_file), key, value)


def _remove_env_var(env_file: Path, key: str) -> None:
    """Remove a key from a .env file if present."""
    from dotenv import unset_key

    if env_file.exists():
        unset_key(str(env_file), key)


def _warn_open_permissions(env_file: Path) -> None:
    """Warn if .env file has group/other read permissions (Unix only)."""
    try:
        mode = env_file.stat().st_mode
        if mode & (stat.S_IRGRP | stat.S_IROTH):
            print(f"\n  WARNING: {env_file} is readable by other users.")
            print("  Recommended: chmod 600", env_file)
    except OSError:
        pass


def _setup_certificate(config_dir: Path) -> bool:
    """Interactive certificate setup. Returns True if a certificate was configured."""
    print()
    print("Signing certificate")
    print("-------------------")

    while True:
        pfx_path = input("Path to .pfx/.p12 certificate (empty to skip): ").strip()
        if not pfx_path:
            print("  Certificate setup skipped.")
            return False
        if Path(pfx_path).is_file():
            break
        print(f"  File not found: {pfx_path}")

    pfx_password = getpass.getpass("Certificate password: ")

    try:
        from fiscalbridge.utils.certificate import validate_certificate

        info = validate_certificate(pfx_path, pfx_password)
    except Exception as e:
        print(f"  ERROR: invalid certificate or wrong password: {e}")
        return False

    print(f"  Subject: {info['subject']}")
    print(f"  Valid until: {info['not_after']}")
    if not info["valid"]:
        print("  WARNING: certificate is not currently valid")

    env_file = config_dir / ".env"
    _upsert_env_var(env_file, "CERT_PFX_PATH", pfx_path)

    if _check_keyring_available():
        from fiscalbridge.config import _set_keyring_password

        if _set_keyring_password(pfx_password):
            print("  Password stored in the system keyring.")
            _remove_env_var(env_file, "CERT_PFX_PASSWORD")
            return True
        print("  ERROR: keyring write failed, storing the password in .env instead.")

    _upsert_env_var(env_file, "CERT_PFX_PASSWORD", pfx_password)
    print(f"  Password saved to {env_file}")
    _warn_open_permissions(env_file)
    return True


def _init_config() -> None:
    """Copy the bundled settings template and create the data/inbox directories."""
    from fiscalbridge.config import get_config_dir, get_data_dir, load_settings

    config_dir = get_config_dir()
    data_dir = get_data_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    data_dir.mkdir(parents=True, exist_ok=True)

    dest = config_dir / "bridge.yaml"
    if dest.exists():
        print(f"  already exists: {dest}")
    else:
        src = files("fiscalbridge") / "templates" / "bridge.yaml.example"
        with src.open("rb") as f:
            dest.write_bytes(f.read())
        print(f"  created: {dest}")

    inbox = load_settings().inbox_path
    inbox.mkdir(parents=True, exist_ok=True)

    print()
    print(f"Config: {config_dir}")
    print(f"Data:   {data_dir}")
    print(f"Inbox:  {inbox}")

    try:
        answer = input("\nConfigure the signing certificate now? [Y/n]: ").strip().lower()
        if answer in ("", "y", "yes"):
            _setup_certificate(config_dir)
    except (EOFError, KeyboardInterrupt):
        print()


def _preflight() -> bool:
    """Verify settings and certificate before starting the agent."""
    from fiscalbridge.config import get_cert_password, get_cert_path, get_data_dir, load_settings

    get_data_dir().mkdir(parents=True, exist_ok=True)
    try:
        load_settings()
    except (OSError, ValueError, TypeError) as e:
        print(f"Error: invalid bridge.yaml: {e}")
        return False
    try:
        get_cert_path()
        get_cert_password()
    except KeyError as e:
        print(f"Error: {e.args[0]} is not configured.")
        print("Run 'fiscal-bridge init' or set it in .env.")
        return False
    return True


def _print_entry(entry: ActivityLogEntry) -> None:
    icon = _ICONS.get(entry.severity, "")
    print(f"{format_timestamp(entry.timestamp)} {icon} {entry.message}")


def _print_status(state: dict) -> None:
    day = state["fiscal_day"]
    print(f"Backend:      {state.get('backend', 'unknown')}")
    if state.get("offline_since"):
        print(f"Offline since {format_timestamp(state['offline_since'])}")
    print(f"Fiscal day:   {day['state']} (#{day['number']})")
    if "watcher_running" in state:
        print(f"Watcher:      {'running' if state['watcher_running'] else 'stopped'}")
    if "queue_length" in state:
        print(f"Queue:        {state['queue_length']}")
    if state.get("parked"):
        print(f"Parked:       {state['parked']}")
    counts = state["counts"]
    print("Invoices:     " + ", ".join(f"{k} {v}" for k, v in counts.items()))
    for inv in state.get("excluded", []):
        print(f"  excluded {inv['number']}: {inv['last_error']}")
    if state.get("alert"):
        print("ALERT: attention required")


def _print_result(result) -> None:
    if not result.ok:
        print(f"{result.command} failed: {result.message}")
        return
    if result.command in ("get-status", "force-sync"):
        _print_status(result.state)
        if result.message:
            print(result.message)
    elif result.command == "get-config":
        for key, value in result.state["local"].items():
            print(f"  {key}: {value}")
        backend = result.state["backend"]
        print(f"  backend: {backend if backend is not None else 'unavailable'}")
    else:
        suffix = " (no change)" if result.already else ""
        print(f"Fiscal day {result.state['state']}{suffix}")


def _offline_status() -> None:
    """Print status from the durable store without contacting the backend."""
    from fiscalbridge.activity import ActivityLog
    from fiscalbridge.config import get_store_path
    from fiscalbridge.models.invoice import EXCLUDED
    from fiscalbridge.store import InvoiceStore

    store = InvoiceStore(get_store_path(), ActivityLog())
    state = {
        "fiscal_day": store.fiscal_day.to_dict(),
        "counts": store.counts(),
        "excluded": [
            {"number": inv.number, "last_error": inv.last_error}
            for inv in store.list_by_status(EXCLUDED)
        ],
    }
    _print_status(state)
    for inv in store.list_unfinished():
        print(f"  {inv.status:8} {inv.number} {format_amount(inv.amount)}")


def _console(bridge) -> None:
    unsubscribe = bridge.activity.subscribe(_print_entry)
    bridge.start()
    print(_HELP)
    try:
        while True:
            try:
                line = input("fiscal-bridge> ").strip().lower()
            except EOFError:
                break
            if not line:
                continue
            if line in ("quit", "exit", "q"):
                break
            if line == "help":
                print(_HELP)
                continue
            if line == "log":
                for entry in bridge.activity.snapshot():
                    _print_entry(entry)
                continue
            try:
                result = bridge.control.dispatch(line)
            except KeyError:
                print(f"Unknown command: {line} (type 'help')")
                continue
            _print_result(result)
    except KeyboardInterrupt:
        print()
    finally:
        unsubscribe()
        bridge.stop()


def main() -> None:
    """Entry point for the fiscal-bridge CLI."""
    command = sys.argv[1] if len(sys.argv) > 1 else "run"

    if command == "init":
        _init_config()
        return
    if command == "status":
        _offline_status()
        return
    if command != "run":
        print(f"Unknown command: {command}")
        print("Usage: fiscal-bridge [init|run|status]")
        sys.exit(2)

    if not _preflight():
        sys.exit(1)

    _configure_logging()
    from fiscalbridge.bridge import create_bridge

    _console(create_bridge())


if __name__ == "__main__":
    main()
