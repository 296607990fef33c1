from __future__ import annotations

import argparse
import json
import os
import sys

import httpx

from propai.core.errors import ValidationFailed
from propai.services.csv_import import check_upload
from propai.services.csv_parser import generate_csv_template


DEFAULT_BASE_URL = os.getenv("PROPAI_BASE_URL", "http://localhost:8000")
DEFAULT_API_KEY = os.getenv("PROPAI_API_KEY", "")

DEFAULT_TIMEOUT_SECONDS = 120


def write_template(path: str) -> int:
    # BOM so spreadsheet apps pick utf-8 for the Japanese sample rows
    with open(path, "w", encoding="utf-8-sig", newline="") as f:
        f.write(generate_csv_template())
    print(f"Template written to {path}")
    return 0


def upload(path: str, *, base_url: str, api_key: str) -> int:
    try:
        size = os.path.getsize(path)
    except OSError as e:
        print(f"Cannot read {path}: {e}", file=sys.stderr)
        return 2

    try:
        check_upload(os.path.basename(path), size)
    except ValidationFailed as e:
        print(e.message, file=sys.stderr)
        return 2

    url = f"{base_url.rstrip('/')}/v1/properties/import-csv"
    try:
        with open(path, "rb") as f:
            resp = httpx.post(
                url,
                headers={"X-API-Key": api_key},
                files={"file": (os.path.basename(path), f, "text/csv")},
                timeout=DEFAULT_TIMEOUT_SECONDS,
            )
    except httpx.HTTPError as e:
        print(f"Network error for {url}: {e}", file=sys.stderr)
        return 1

    try:
        body = resp.json()
    except ValueError:
        print(f"HTTP {resp.status_code} for {url}", file=sys.stderr)
        print(resp.text, file=sys.stderr)
        return 1

    print(json.dumps(body, indent=2, ensure_ascii=False))
    return 0 if resp.is_success and body.get("success") else 1


def main() -> int:
    p = argparse.ArgumentParser(description="Property CSV helper (template download / upload).")
    sub = p.add_subparsers(dest="command", required=True)

    t = sub.add_parser("template", help="write the CSV template")
    t.add_argument("--out", default="property_template.csv")

    u = sub.add_parser("upload", help="upload a CSV file to the import endpoint")
    u.add_argument("--file", required=True, help="path to .csv file")
    u.add_argument("--base-url", default=DEFAULT_BASE_URL)
    u.add_argument("--api-key", default=DEFAULT_API_KEY)

    args = p.parse_args()

    if args.command == "template":
        return write_template(args.out)

    if not args.api_key:
        print("Missing PROPAI_API_KEY (env) or --api-key", file=sys.stderr)
        return 2
    return upload(args.file, base_url=args.base_url, api_key=args.api_key)


if __name__ == "__main__":
    raise SystemExit(main())
