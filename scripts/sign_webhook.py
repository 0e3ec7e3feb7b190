# scripts/sign_webhook.py
import argparse
import os

import httpx

from boxoffice.security import SIGNATURE_HEADER, sign_webhook


def main() -> None:
    parser = argparse.ArgumentParser(description="Sign (and optionally send) a payment provider notification.")
    parser.add_argument("--id", required=True, help="provider payment or refund id, e.g. tr_abc or re_abc")
    parser.add_argument("--ttl-minutes", type=int, default=5)
    parser.add_argument("--send", metavar="URL", help="POST the signed notification to this URL")
    args = parser.parse_args()

    secret = os.environ.get("WEBHOOK_SIGNING_SECRET", "dev_webhook_secret_change_me")
    body = f"id={args.id}".encode()
    signature = sign_webhook(args.id, body, secret, ttl_minutes=args.ttl_minutes)

    if not args.send:
        print(signature)
        return

    r = httpx.post(
        args.send,
        content=body,
        headers={SIGNATURE_HEADER: signature, "Content-Type": "application/x-www-form-urlencoded"},
        timeout=10.0,
    )
    print(r.status_code, r.text)


if __name__ == "__main__":
    main()
