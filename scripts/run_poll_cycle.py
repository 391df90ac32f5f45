#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _resolve_api_base_url(explicit_value: str | None) -> str:
    candidate = (explicit_value or os.getenv("AUTOPILOT_API_BASE_URL", "") or "http://localhost:8000").strip()
    if candidate.endswith("/api/v1/autopilot"):
        return candidate
    return f"{candidate.rstrip('/')}/api/v1/autopilot"


def _trigger_remote(api_base_url: str, *, dry_run: bool, secret: str, timeout_seconds: int) -> dict[str, Any]:
    headers = {"Accept": "application/json", "Content-Type": "application/json"}
    if secret:
        headers["Authorization"] = f"Bearer {secret}"
    request = urllib.request.Request(
        f"{api_base_url}/poll",
        data=json.dumps({"dry_run": dry_run}).encode("utf-8"),
        headers=headers,
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout_seconds) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"POST /poll failed with {exc.code}: {detail}") from exc


def _run_local(*, dry_run: bool) -> dict[str, Any]:
    from autopilot_web import api as api_module

    report = api_module.build_cycle_driver().run_cycle(dry_run=dry_run)
    return api_module.cycle_report_response(report).model_dump(mode="json")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one autopilot poll cycle (for cron hosts).")
    parser.add_argument(
        "--api-base-url",
        default=None,
        help=(
            "Backend base URL. Accepts either host root (e.g. http://localhost:8000) "
            "or full API prefix (e.g. http://localhost:8000/api/v1/autopilot)."
        ),
    )
    parser.add_argument("--dry-run", action="store_true", help="Evaluate conversations without sending replies.")
    parser.add_argument(
        "--local",
        action="store_true",
        help="Run the cycle in-process against the configured stores instead of calling the API.",
    )
    parser.add_argument("--timeout-seconds", type=int, default=300, help="HTTP timeout for the trigger call.")
    return parser.parse_args()


def main() -> int:
    root_dir = Path(__file__).resolve().parents[1]
    _load_dotenv(root_dir / ".env")
    args = parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.local:
        report = _run_local(dry_run=args.dry_run)
    else:
        report = _trigger_remote(
            _resolve_api_base_url(args.api_base_url),
            dry_run=args.dry_run,
            secret=os.getenv("AUTOPILOT_API_SECRET", "").strip(),
            timeout_seconds=args.timeout_seconds,
        )

    print(json.dumps(report, indent=2))
    print(
        f"processed={report.get('processed')} sent={report.get('sent')} "
        f"skipped={report.get('skipped')} failed={report.get('failed')}"
    )
    return 1 if report.get("errors") else 0


if __name__ == "__main__":
    raise SystemExit(main())
