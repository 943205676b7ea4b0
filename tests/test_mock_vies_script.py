from __future__ import annotations

import asyncio
import importlib.util
import threading
from http.server import ThreadingHTTPServer
from pathlib import Path

from vatcheck.core.keys import LookupKey
from vatcheck.services.vies import ViesClient

SCRIPT_PATH = Path(__file__).resolve().parents[1] / "scripts" / "mock_vies.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("mock_vies", SCRIPT_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_mock_vies_answers_lookups_and_status() -> None:
    mock_vies = _load_script()
    mock_vies.MockViesHandler.unavailable = frozenset({"FR"})
    server = ThreadingHTTPServer(("127.0.0.1", 0), mock_vies.MockViesHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()

    async def scenario():
        client = ViesClient(f"http://127.0.0.1:{server.server_address[1]}/rest-api", timeout_seconds=5)
        try:
            return (
                await client.check_vat(LookupKey("NL", "123456789B01")),
                await client.check_vat(LookupKey("DE", "111000")),
                await client.check_vat(LookupKey("FR", "12345678901")),
                await client.check_status(),
            )
        finally:
            await client.aclose()

    try:
        valid, invalid, unavailable, snapshot = asyncio.run(scenario())
    finally:
        server.shutdown()
        server.server_close()

    assert valid.ok and valid.payload["valid"] is True
    assert invalid.ok and invalid.payload["valid"] is False
    assert not unavailable.ok
    assert unavailable.error_code == "MS_UNAVAILABLE"
    assert {"countryCode": "FR", "availability": "Unavailable"} in snapshot
