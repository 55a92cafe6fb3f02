#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
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
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
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
    if explicit_value:
        candidate = explicit_value.strip()
    else:
        candidate = os.getenv("NOTIFICATIONS_API_BASE_URL", "").strip() or "http://localhost:8000"
    api_prefix = os.getenv("NOTIFY_API_PREFIX", "").strip().strip("/") or "api/v1"
    suffix = f"/{api_prefix}/notifications"
    if candidate.rstrip("/").endswith(suffix):
        return candidate.rstrip("/")
    return f"{candidate.rstrip('/')}{suffix}"


def _request_json(
    method: str,
    base_url: str,
    path: str,
    *,
    payload: dict[str, Any] | None = None,
    token: str | None = None,
    timeout_seconds: float = 60,
) -> dict[str, Any]:
    body = None if payload is None else json.dumps(payload).encode("utf-8")
    headers: dict[str, str] = {"Accept": "application/json"}
    if payload is not None:
        headers["Content-Type"] = "application/json"
    if token:
        headers["Authorization"] = f"Bearer {token}"

    request = urllib.request.Request(
        f"{base_url}/{path.lstrip('/')}",
        data=body,
        headers=headers,
        method=method,
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout_seconds) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"{method} {path} failed with {exc.code}: {detail}") from exc


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Trigger one scheduled-notification batch run. Meant for an hourly cron job; "
            "rows left over when the time budget runs out are picked up by the next run."
        )
    )
    parser.add_argument(
        "--api-base-url",
        default=None,
        help=(
            "Backend base URL. Accepts either host root (e.g. http://localhost:8000) "
            "or full API prefix (e.g. http://localhost:8000/api/v1/notifications)."
        ),
    )
    parser.add_argument(
        "--cron-secret",
        default=None,
        help="Bearer secret for the trigger endpoint. Defaults to CRON_SECRET from environment/.env.",
    )
    parser.add_argument(
        "--time-budget-seconds",
        type=float,
        default=None,
        help="Override the server-side batch time budget for this run.",
    )
    parser.add_argument(
        "--reconcile-all",
        action="store_true",
        help="Backfill missing notification rows for every booking before running the batch.",
    )
    parser.add_argument(
        "--fail-on-errors",
        action="store_true",
        help="Exit with status 1 when any notification failed in this run.",
    )
    return parser.parse_args()


def main() -> int:
    root_dir = Path(__file__).resolve().parents[1]
    _load_dotenv(root_dir / ".env")
    args = parse_args()

    if args.time_budget_seconds is not None and not 0 < args.time_budget_seconds <= 300:
        raise SystemExit("--time-budget-seconds must be between 0 and 300")

    api_base_url = _resolve_api_base_url(args.api_base_url)
    cron_secret = (args.cron_secret or os.getenv("CRON_SECRET", "")).strip() or None

    if args.reconcile_all:
        backfill = _request_json("POST", api_base_url, "admin/reconcile-all", token=cron_secret)
        print(
            f"reconciled {backfill['subject_count']} bookings: "
            f"{backfill['inserted_count']} rows inserted, {backfill['failed_count']} failed"
        )

    payload: dict[str, Any] = {}
    if args.time_budget_seconds is not None:
        payload["time_budget_seconds"] = args.time_budget_seconds
    summary = _request_json("POST", api_base_url, "run-due", payload=payload, token=cron_secret)
    print(json.dumps(summary, indent=2))

    if args.fail_on_errors and summary.get("failed", 0):
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
