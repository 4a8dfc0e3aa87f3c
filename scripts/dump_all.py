#!/usr/bin/env python3
"""Dump every collection the signed-in user can read.

This script signs in, loads each collection of the default catalog and
prints the rows, so you can compare what the cache holds with what the
backend returns.

Usage
-----
Set environment variables and run::

    export STASH_URL="https://stash.example.com"
    export STASH_API_KEY="anon-key"
    export STASH_EMAIL="you@example.com"
    export STASH_PASSWORD="your-password"
    python scripts/dump_all.py

Options::

    --collection NAME    Only dump this collection (repeatable)
    --json               Output as machine-readable JSON
    --output FILE        Write output to FILE instead of stdout
    --skip-settings      Skip the user settings row
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

# Allow running from the repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from pystash import StashClient, StashConfig  # noqa: E402
from pystash.catalog import CollectionSpec  # noqa: E402

# ── helpers ──────────────────────────────────────────────────


def _section(title: str) -> str:
    line = "=" * 60
    return f"\n{line}\n  {title}\n{line}"


def _print_rows(name: str, rows: list[dict[str, Any]], out: list[str]) -> None:
    out.append(_section(f"{name}  ({len(rows)} rows)"))
    for row in rows:
        out.append(json.dumps(row, indent=2, default=str, ensure_ascii=False))


# ── main ─────────────────────────────────────────────────────


async def dump_collection(
    client: StashClient,
    spec: CollectionSpec,
    out: list[str],
    **scope: Any,
) -> dict[str, Any]:
    """Load one collection key and record its rows or the failure."""
    label = spec.name if not scope else f"{spec.name} {scope}"
    try:
        rows = await client.collection(spec.name, **scope).load()
    except Exception as exc:
        out.append(_section(label))
        out.append(f"  !! {spec.name} failed: {exc}")
        return {"scope": scope, "error": str(exc), "traceback": traceback.format_exc()}
    _print_rows(label, rows, out)
    return {"scope": scope, "rows": rows}


async def main() -> None:
    parser = argparse.ArgumentParser(
        description="Dump every collection pystash can read for debugging / development.",
    )
    parser.add_argument("--collection", action="append", help="Only dump this collection (repeatable)")
    parser.add_argument("--json", action="store_true", dest="json_mode", help="Output machine-readable JSON")
    parser.add_argument("--output", "-o", help="Write output to FILE instead of stdout")
    parser.add_argument("--skip-settings", action="store_true", help="Skip the user settings row")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    else:
        logging.basicConfig(level=logging.WARNING)

    config = StashConfig.from_env(feed_enabled=False)
    result: dict[str, Any] = {
        "timestamp": datetime.now(UTC).isoformat(),
        "base_url": config.base_url,
        "collections": {},
    }

    out: list[str] = []
    out.append(_section("pystash dump_all"))
    out.append(f"  time      : {result['timestamp']}")
    out.append(f"  backend   : {config.base_url}")

    async with StashClient(config) as client:
        session = await client.sign_in()
        out.append(f"  user_id   : {session.user_id}")
        result["user_id"] = session.user_id

        wanted = set(args.collection or ())
        specs = [spec for spec in client.catalog if not wanted or spec.name in wanted]

        # Unscoped collections first; scoped ones need their parent rows.
        cosmetic_ids: list[str] = []
        for spec in specs:
            if spec.scope_fields:
                continue
            data = await dump_collection(client, spec, out)
            result["collections"][spec.name] = [data]
            if spec.name == "cosmetics":
                cosmetic_ids = [str(row["id"]) for row in data.get("rows", [])]

        for spec in specs:
            if spec.scope_fields != ("cosmetic_id",):
                continue
            result["collections"][spec.name] = [
                await dump_collection(client, spec, out, cosmetic_id=cosmetic_id) for cosmetic_id in cosmetic_ids
            ]

        if not args.skip_settings:
            settings = await client.get_settings()
            out.append(_section("USER SETTINGS"))
            out.append(f"  has_api_key : {settings.has_api_key}")
            out.append(f"  preferences : {settings.preferences.to_document()}")
            result["settings"] = settings.model_dump(exclude={"gemini_api_key"})

    # ── Output ──
    payload = json.dumps(result, indent=2, default=str, ensure_ascii=False)
    if args.json_mode:
        if args.output:
            Path(args.output).write_text(payload, encoding="utf-8")
            print(f"JSON written to {args.output}", file=sys.stderr)
        else:
            print(payload)
        return

    print("\n".join(out))
    if args.output:
        Path(args.output).write_text(payload, encoding="utf-8")
        print(f"JSON written to {args.output}")


if __name__ == "__main__":
    asyncio.run(main())
