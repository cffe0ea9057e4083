#!/usr/bin/env python3
"""
Client for the NFT-gated document endpoint: sign, request, save.

Signs an access message with a wallet key (personal-sign), optionally embeds a
nonce fetched from the endpoint first, POSTs the request and writes the PDF to
disk (proxy mode) or prints the document URL (redirect mode). Requires:
eth-account, requests.

  python3 examples/request_document_access.py --endpoint https://example.org/api/view --output docs.pdf
  python3 examples/request_document_access.py --endpoint https://example.org/api/view --with-nonce --token-id 3

The private key is read from --private-key or DOCUMENT_GATE_PRIVATE_KEY.
"""

import argparse
import json
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import requests
from eth_account import Account
from eth_account.messages import encode_defunct

# Exit codes
EXIT_SUCCESS = 0
EXIT_VALIDATION = 1
EXIT_HTTP = 2

DEFAULT_TIMEOUT_SECONDS = 15.0
PRIVATE_KEY_ENV = "DOCUMENT_GATE_PRIVATE_KEY"


def build_access_message(nonce: str | None = None, issued_at: datetime | None = None) -> str:
    issued_at = issued_at or datetime.now(timezone.utc)
    lines = ["Request access to the gated document", f"Issued at: {issued_at.strftime('%Y-%m-%dT%H:%M:%SZ')}"]
    if nonce:
        lines.append(f"Nonce: {nonce}")
    return "\n".join(lines)


def build_signed_request(private_key: str, message: str, token_id: int | None = None) -> dict:
    """Sign ``message`` and return the JSON body expected by the endpoint."""
    account = Account.from_key(private_key)
    signed = Account.sign_message(encode_defunct(text=message), private_key)
    body = {
        "address": account.address,
        "message": message,
        "signature": "0x" + bytes(signed.signature).hex(),
    }
    if token_id is not None:
        body["tokenId"] = token_id
    return body


def fetch_nonce(endpoint: str, session: requests.Session, timeout: float) -> str:
    response = session.get(endpoint, params={"nonce": "1"}, timeout=timeout)
    response.raise_for_status()
    return response.json()["nonce"]


def request_document(endpoint: str, body: dict, session: requests.Session, timeout: float) -> requests.Response:
    return session.post(endpoint, json=body, timeout=timeout)


def _error_text(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    return f"{payload.get('error')}: {payload.get('message')}"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Request an NFT-gated PDF")
    parser.add_argument("--endpoint", required=True, help="Document access URL, e.g. https://host/api/view")
    parser.add_argument("--private-key", default=os.environ.get(PRIVATE_KEY_ENV), help=f"Wallet key (or {PRIVATE_KEY_ENV})")
    parser.add_argument("--message", help="Message to sign (default: generated access message)")
    parser.add_argument("--token-id", type=int, help="ERC-1155 token id to check")
    parser.add_argument("--with-nonce", action="store_true", help="Fetch and sign a single-use nonce first")
    parser.add_argument("--output", default="docs.pdf", help="Where to write the PDF in proxy mode")
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT_SECONDS)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None, session: requests.Session | None = None) -> int:
    args = parse_args(argv)
    if not args.private_key:
        print(f"A private key is required (--private-key or {PRIVATE_KEY_ENV})", file=sys.stderr)
        return EXIT_VALIDATION

    session = session or requests.Session()
    try:
        nonce = fetch_nonce(args.endpoint, session, args.timeout) if args.with_nonce else None
        message = args.message if args.message is not None else build_access_message(nonce)
        try:
            body = build_signed_request(args.private_key, message, token_id=args.token_id)
        except ValueError as exc:
            print(f"Invalid private key: {exc}", file=sys.stderr)
            return EXIT_VALIDATION
        response = request_document(args.endpoint, body, session, args.timeout)
    except requests.RequestException as exc:
        print(f"Request failed: {exc}", file=sys.stderr)
        return EXIT_HTTP

    if response.status_code != 200:
        print(f"HTTP {response.status_code} {_error_text(response)}", file=sys.stderr)
        return EXIT_HTTP

    content_type = str(response.headers.get("Content-Type") or "")
    if "pdf" in content_type.lower():
        output = Path(args.output)
        output.write_bytes(response.content)
        print(f"Saved {len(response.content)} bytes to {output}")
    else:
        print(json.dumps(response.json(), indent=2))
    return EXIT_SUCCESS


if __name__ == "__main__":
    sys.exit(main())
