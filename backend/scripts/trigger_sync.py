#!/usr/bin/env python3
"""Trigger an on-demand observation sync and print orchestrator status."""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any

import requests

VARIANTS = ("multi_hospital", "direct_db", "rest_api")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Call /sync/{variant}/run and report the resulting sync status."
    )
    parser.add_argument(
        "--base-url",
        default="http://localhost:8000/api/v1",
        help="Backend API base URL (default: http://localhost:8000/api/v1)",
    )
    parser.add_argument(
        "--variant",
        choices=VARIANTS,
        default="multi_hospital",
        help="Orchestrator to trigger (default: multi_hospital).",
    )
    parser.add_argument(
        "--hospital-id",
        help="Restrict the run to one hospital.",
    )
    parser.add_argument(
        "--api-key",
        default=os.getenv("PASSPORT_SYNC_API_KEY") or os.getenv("API_KEY"),
        help="Value for the X-API-Key header (or set PASSPORT_SYNC_API_KEY).",
    )
    parser.add_argument(
        "--status-only",
        action="store_true",
        help="Skip the run and only print status.",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=300,
        help="Request timeout seconds (default: 300).",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print full JSON output.",
    )
    return parser.parse_args()


def _headers(api_key: str | None) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["X-API-Key"] = api_key
    return headers


def _request_json(
    method: str,
    url: str,
    *,
    headers: dict[str, str],
    timeout: int,
    params: dict[str, str] | None = None,
) -> Any:
    response = requests.request(method, url, headers=headers, timeout=timeout, params=params)
    if response.status_code >= 400:
        body = response.text.strip().replace("\n", " ")
        raise RuntimeError(f"HTTP {response.status_code} {url} -> {body[:400]}")
    try:
        return response.json()
    except ValueError as exc:
        raise RuntimeError(f"Non-JSON response from {url}") from exc


def _print_status(rows: list[dict[str, Any]]) -> None:
    if not rows:
        print("No sync orchestrators enabled.")
        return
    for row in rows:
        state = "running" if row.get("is_running") else "idle"
        scheduled = "scheduled" if row.get("is_scheduled") else "stopped"
        markers = row.get("last_synced_marker") or {}
        marker_text = (
            ", ".join(f"{key}={value or '-'}" for key, value in sorted(markers.items()))
            if markers
            else "-"
        )
        print(
            f"[{row.get('variant')}] {state}/{scheduled} "
            f"interval_ms={row.get('configured_interval_ms')} markers={marker_text}"
        )


def main() -> int:
    args = _parse_args()
    base_url = args.base_url.rstrip("/")
    headers = _headers(args.api_key)
    output: dict[str, Any] = {}
    exit_code = 0

    if not args.status_only:
        params = {"hospital_id": args.hospital_id} if args.hospital_id else None
        try:
            result = _request_json(
                "POST",
                f"{base_url}/sync/{args.variant}/run",
                headers=headers,
                timeout=args.timeout,
                params=params,
            )
        except Exception as exc:
            print(f"Sync run failed: {exc}", file=sys.stderr)
            return 2
        output["run"] = result
        if not result.get("success"):
            exit_code = 1

    try:
        status = _request_json(
            "GET",
            f"{base_url}/sync/status",
            headers=headers,
            timeout=args.timeout,
        )
    except Exception as exc:
        print(f"Failed to load sync status: {exc}", file=sys.stderr)
        return 2
    output["status"] = status

    if args.json:
        print(json.dumps(output, indent=2, default=str))
        return exit_code

    if "run" in output:
        run = output["run"]
        label = "OK" if run.get("success") else "FAIL"
        print(f"[{label}] {args.variant}: {run.get('message')} (created={run.get('count')})")
    _print_status(status if isinstance(status, list) else [])
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
