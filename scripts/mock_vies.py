#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import random
from datetime import datetime, timezone
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

KNOWN_COUNTRIES = (
    "AT", "BE", "BG", "CY", "CZ", "DE", "DK", "EE", "EL", "ES", "FI", "FR", "HR", "HU",
    "IE", "IT", "LT", "LU", "LV", "MT", "NL", "PL", "PT", "RO", "SE", "SI", "SK", "XI",
)


class MockViesHandler(BaseHTTPRequestHandler):
    server_version = "MockVies/1.0"
    congestion_rate = 0.0
    unavailable: frozenset[str] = frozenset()
    rng = random.Random()

    def do_GET(self) -> None:  # noqa: N802 - stdlib handler signature
        if self.path == "/healthz":
            self._write_json(HTTPStatus.OK, {"status": "ok"})
            return

        if not self.path.endswith("/check-status"):
            self._write_json(HTTPStatus.NOT_FOUND, {"detail": "not found"})
            return

        countries = [
            {"countryCode": code, "availability": "Unavailable" if code in self.unavailable else "Available"}
            for code in KNOWN_COUNTRIES
        ]
        self._write_json(HTTPStatus.OK, {"vow": {"available": True}, "countries": countries})

    def do_POST(self) -> None:  # noqa: N802 - stdlib handler signature
        if not self.path.endswith("/check-vat-number"):
            self._write_json(HTTPStatus.NOT_FOUND, {"detail": "not found"})
            return

        length = int(self.headers.get("Content-Length", "0") or 0)
        try:
            body = json.loads(self.rfile.read(length) or b"{}")
        except json.JSONDecodeError:
            self._write_json(HTTPStatus.BAD_REQUEST, _error("INVALID_INPUT", "body is not JSON"))
            return

        country = str(body.get("countryCode", "")).upper()
        number = str(body.get("vatNumber", ""))
        if country in self.unavailable:
            self._write_json(HTTPStatus.OK, _error("MS_UNAVAILABLE", f"{country} is unavailable"))
            return
        if self.rng.random() < self.congestion_rate:
            self._write_json(HTTPStatus.OK, _error("MS_MAX_CONCURRENT_REQ", "too many concurrent requests"))
            return
        if country not in KNOWN_COUNTRIES or not number:
            self._write_json(HTTPStatus.BAD_REQUEST, _error("INVALID_INPUT", "unknown country or empty number"))
            return

        valid = not number.endswith("000")
        self._write_json(
            HTTPStatus.OK,
            {
                "countryCode": country,
                "vatNumber": number,
                "requestDate": datetime.now(timezone.utc).isoformat(),
                "valid": valid,
                "requestIdentifier": f"MOCK{self.rng.randrange(10**8):08d}",
                "name": f"MOCK COMPANY {number}" if valid else "---",
                "address": "1 MOCK STREET" if valid else "---",
            },
        )

    def log_message(self, _: str, *args: object) -> None:
        if args:
            print("mock-vies:", *args)

    def _write_json(self, status: HTTPStatus, payload: dict[str, object]) -> None:
        raw = json.dumps(payload).encode("utf-8")
        self.send_response(status.value)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        self.wfile.write(raw)


def _error(code: str, message: str) -> dict[str, object]:
    return {"actionSucceed": False, "errorWrappers": [{"error": code, "message": message}]}


def main() -> None:
    parser = argparse.ArgumentParser(description="Mock VIES check-vat-number and check-status endpoints.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8089)
    parser.add_argument("--congestion-rate", type=float, default=0.0, help="share of lookups answered as congested")
    parser.add_argument("--unavailable", default="", help="comma separated country codes reported as down")
    parser.add_argument("--seed", type=int, default=None)
    args = parser.parse_args()

    MockViesHandler.congestion_rate = max(0.0, min(1.0, args.congestion_rate))
    MockViesHandler.unavailable = frozenset(code.strip().upper() for code in args.unavailable.split(",") if code.strip())
    MockViesHandler.rng = random.Random(args.seed)

    server = ThreadingHTTPServer((args.host, args.port), MockViesHandler)
    print(f"mock-vies listening on http://{args.host}:{args.port}", flush=True)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()


if __name__ == "__main__":
    main()
