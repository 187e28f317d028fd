"""
create-db: provision a temporary database from the command line.
Prints the connection string, when it will be deleted, and the link to claim it.
"""
import argparse
import json
import sys
from datetime import datetime, timezone

import httpx

from db_client.config import CREATE_DB_SERVICE_URL, DEFAULT_REGION, REQUEST_TIMEOUT_SECONDS
from db_client.ttl import parse_ttl


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="create-db",
        description="Create a temporary database that is deleted unless you claim it.",
    )
    parser.add_argument("-r", "--region", default=DEFAULT_REGION, help="region to create the database in")
    parser.add_argument("-t", "--ttl", help="time to live, e.g. 30m, 1h, 24h (default 24h)")
    parser.add_argument("-j", "--json", action="store_true", help="print the result as JSON")
    parser.add_argument("--list-regions", action="store_true", help="list available regions and exit")
    parser.add_argument("--service-url", default=CREATE_DB_SERVICE_URL, help=argparse.SUPPRESS)
    return parser


def create_database(service_url: str, region: str, ttl_ms: int | None) -> dict:
    """POST /create. Returns the parsed body plus the HTTP status under "_status"."""
    body: dict = {
        "region": region,
        "name": datetime.now(timezone.utc).isoformat(),
        "utm_source": "create-db",
    }
    if ttl_ms is not None:
        body["ttlMs"] = ttl_ms
    r = httpx.post(f"{service_url}/create", json=body, timeout=REQUEST_TIMEOUT_SECONDS)
    try:
        data = r.json()
    except ValueError:
        data = {"error": "invalid_json", "message": "Unexpected response from create service.", "raw": r.text}
    if not isinstance(data, dict):
        data = {"error": "invalid_json", "message": "Unexpected response from create service.", "raw": r.text}
    data["_status"] = r.status_code
    return data


def list_regions(service_url: str) -> list[dict]:
    r = httpx.get(f"{service_url}/regions", timeout=REQUEST_TIMEOUT_SECONDS)
    r.raise_for_status()
    data = r.json()
    return data.get("data", []) if isinstance(data, dict) else data


def _error_message(result: dict) -> str:
    detail = result.get("detail")
    if isinstance(detail, dict):
        return detail.get("message") or detail.get("error") or "Unknown error"
    return result.get("message") or result.get("error") or "Unknown error"


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.list_regions:
        try:
            regions = list_regions(args.service_url)
        except httpx.HTTPError as e:
            print(f"Could not list regions: {e}", file=sys.stderr)
            return 1
        for region in regions:
            print(f"{region.get('id')}\t{region.get('name', '')}\t{region.get('status', '')}")
        return 0

    ttl_ms = None
    if args.ttl is not None:
        ttl_ms = parse_ttl(args.ttl)
        if ttl_ms is None:
            print("Invalid --ttl: use minutes or hours like 30m or 1h, between 30m and 24h.", file=sys.stderr)
            return 2

    try:
        result = create_database(args.service_url, args.region, ttl_ms)
    except httpx.HTTPError as e:
        print(f"Could not reach the create service: {e}", file=sys.stderr)
        return 1

    status = result.pop("_status")
    if args.json:
        print(json.dumps(result, indent=2))
        return 0 if status == 200 else 1

    if status == 429:
        print("We're experiencing a high volume of requests. Please try again later.", file=sys.stderr)
        return 1
    if status != 200:
        print(f"Database creation failed: {_error_message(result)}", file=sys.stderr)
        return 1

    print(f"Database created in {result.get('region')}")
    print()
    print("Connection string:")
    print(f"  {result.get('connectionString') or '(not available)'}")
    print()
    print(f"This database will be deleted at {result.get('deletionAt')}.")
    print("Claim it to keep it:")
    print(f"  {result.get('claimUrl')}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
