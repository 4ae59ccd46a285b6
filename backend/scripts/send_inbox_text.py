from __future__ import annotations

import argparse
import pathlib
import sys
import uuid
from datetime import datetime, timezone

import httpx

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.core.config import get_settings


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def build_body(text: str, outbox_id: str | None) -> str:
    if not outbox_id:
        return text
    return f"OUTBOX_ID: {outbox_id}\n---\n{text}"


def main() -> int:
    parser = argparse.ArgumentParser(description="Send one dictated instruction to the chronos inbox endpoint.")
    parser.add_argument(
        "--inbox-url",
        type=str,
        default="http://127.0.0.1:8000/api/inbox",
        help="Target backend inbox URL.",
    )
    parser.add_argument("--text", type=str, required=True, help="Instruction text.")
    parser.add_argument("--outbox-id", type=str, default="", help="Fingerprint token. Auto-generated if omitted.")
    parser.add_argument("--no-outbox-id", action="store_true", help="Send without a fingerprint token.")
    parser.add_argument("--repeat", type=int, default=1, help="Send the same body this many times.")
    args = parser.parse_args()

    settings = get_settings()
    inbox_key = str(settings.chronos_inbox_key or "").strip()
    if not inbox_key:
        print("[inbox-send]")
        print("- verdict: FAIL")
        print("- reason: missing_chronos_inbox_key")
        return 1

    outbox_id = None if args.no_outbox_id else (str(args.outbox_id).strip() or uuid.uuid4().hex[:12])
    body = build_body(str(args.text), outbox_id)
    headers = {"Content-Type": "text/plain; charset=utf-8", "X-CHRONOS-KEY": inbox_key}

    print("[inbox-send]")
    print(f"- inbox_url: {str(args.inbox_url).strip()}")
    print(f"- outbox_id: {outbox_id or '-'}")
    failed = False
    with httpx.Client(timeout=60) as client:
        for attempt in range(max(1, int(args.repeat))):
            response = client.post(str(args.inbox_url).strip(), content=body.encode("utf-8"), headers=headers)
            print(f"- attempt {attempt + 1} sent_at={_now_iso()} status_code={response.status_code}")
            if response.status_code >= 400:
                failed = True
                print(f"  reason: inbox_post_failed:{response.status_code}")
                continue
            data = response.json()
            print(f"  action={data.get('action')} event_id={data.get('event_id')} idempotent={data.get('idempotent')}")

    print(f"- verdict: {'FAIL' if failed else 'PASS'}")
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
