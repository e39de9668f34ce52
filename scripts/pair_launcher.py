"""Utility for launching two call clients that meet in the same room."""
from __future__ import annotations

import argparse
import atexit
import signal
import subprocess
import sys
import time
from pathlib import Path

ProcessRecord = tuple[str, subprocess.Popen]

PROCESSES: list[ProcessRecord] = []


def _register_process(name: str, proc: subprocess.Popen) -> None:
    PROCESSES.append((name, proc))


def _terminate_process(name: str, proc: subprocess.Popen, timeout: float) -> None:
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()


def _cleanup() -> None:
    while PROCESSES:
        name, proc = PROCESSES.pop()
        try:
            _terminate_process(name, proc, timeout=5.0)
        except Exception:
            pass


def _handle_signal(signum: int, frame: object) -> None:  # pragma: no cover - signal runtime
    _cleanup()
    sys.exit(0)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Launch two clients into one call room")
    parser.add_argument("signaling_url", help="URL of the Socket.IO signaling relay")
    parser.add_argument("room", help="Room both clients should join")
    parser.add_argument("--python", default=sys.executable, help="Python interpreter to use for subprocesses")
    parser.add_argument("--ui-host", default="127.0.0.1", help="Host binding for each client UI server")
    parser.add_argument("--ui-start-port", type=int, default=8100, help="UI port of the first client")
    parser.add_argument("--max-call-seconds", type=int, default=300)
    parser.add_argument("--client-delay", type=float, default=1.0, help="Delay before starting the second client")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--workspace", default=str(Path(__file__).resolve().parent.parent), help="Working directory")
    return parser.parse_args()


def _launch_process(name: str, cmd: list[str], cwd: str) -> subprocess.Popen:
    proc = subprocess.Popen(cmd, cwd=cwd)
    _register_process(name, proc)
    return proc


def main() -> None:
    args = _parse_args()
    atexit.register(_cleanup)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handle_signal)
        except Exception:
            pass

    for index in range(2):
        ui_port = args.ui_start_port + index
        client_cmd = [
            args.python,
            "-m",
            "client",
            args.signaling_url,
            "--room",
            args.room,
            "--max-call-seconds",
            str(args.max_call_seconds),
            "--ui-host",
            args.ui_host,
            "--ui-port",
            str(ui_port),
            "--log-level",
            args.log_level,
        ]
        print(f"Starting client {index + 1}/2 on UI port {ui_port}")
        _launch_process(f"client-{ui_port}", client_cmd, cwd=args.workspace)
        if index == 0:
            # The second client becomes the offerer once the relay sees the first
            time.sleep(max(args.client_delay, 0.0))

    print("Both clients started. Press Ctrl+C to stop them.")

    try:
        while True:
            time.sleep(1.0)
            if all(proc.poll() is not None for _, proc in PROCESSES):
                break
    except KeyboardInterrupt:
        pass
    finally:
        _cleanup()


if __name__ == "__main__":
    main()
