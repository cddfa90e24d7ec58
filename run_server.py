from __future__ import annotations

import argparse
import os
from pathlib import Path
import signal
import subprocess
import sys
import time
import urllib.request


def _wait_for_server(url: str, timeout_s: float = 20.0) -> bool:
    deadline = time.time() + timeout_s
    while time.time() < deadline:
        try:
            with urllib.request.urlopen(url, timeout=1.0) as resp:
                if resp.status == 200:
                    return True
        except Exception:
            pass
        time.sleep(0.2)
    return False


def _terminate_process(proc: subprocess.Popen[bytes] | None) -> None:
    if proc is None or proc.poll() is not None:
        return
    try:
        proc.terminate()
        proc.wait(timeout=2.0)
    except Exception:
        try:
            proc.kill()
        except Exception:
            pass


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the level telemetry host service.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--reload", dest="reload", action="store_true")
    parser.add_argument("--no-reload", dest="reload", action="store_false")
    parser.add_argument("--db", default=None, help="SQLite file for the pending queue and delivery log.")
    parser.add_argument("--log-level", default=None)
    parser.add_argument(
        "--flush-delay",
        type=float,
        default=None,
        help="Seconds between a submit and the follow-up flush of queued reports.",
    )
    parser.set_defaults(reload=False)
    args = parser.parse_args()

    root = Path(__file__).resolve().parent
    health_url = f"http://{args.host}:{args.port}/api/health"

    uvicorn_cmd = [
        sys.executable,
        "-m",
        "uvicorn",
        "analytics.main:app",
        "--host",
        args.host,
        "--port",
        str(args.port),
        "--timeout-graceful-shutdown",
        "0",
    ]
    if args.reload:
        uvicorn_cmd.extend(["--reload", "--reload-dir", "analytics"])

    env = dict(os.environ)
    if args.db:
        env["LEVEL_TELEMETRY_DB_PATH"] = str(Path(args.db).resolve())
    if args.log_level:
        env["LEVEL_TELEMETRY_LOG_LEVEL"] = args.log_level
    if args.flush_delay is not None:
        env["LEVEL_TELEMETRY_FLUSH_DELAY_SECONDS"] = str(args.flush_delay)

    uvicorn_proc = subprocess.Popen(uvicorn_cmd, cwd=root, env=env)

    def _shutdown(_: int | None = None, __: object | None = None) -> None:
        _terminate_process(uvicorn_proc)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        if _wait_for_server(health_url):
            print(f"[level-telemetry] listening on {health_url.rsplit('/api', 1)[0]}")
        return uvicorn_proc.wait()
    except KeyboardInterrupt:
        _shutdown()
        return 130
    finally:
        _shutdown()


if __name__ == "__main__":
    raise SystemExit(main())
