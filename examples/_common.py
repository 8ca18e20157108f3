"""
Shared helpers for Herald examples.

Handles the health check and API-key setup so each example can focus
on its specific workflow.

The server must know the key. For a local run:

    HERALD_API_KEYS='{"dev-key": "demo-app"}' uvicorn herald.main:app --port 8000
"""

import os
import sys

import httpx

BASE = os.environ.get("HERALD_API_URL", "http://localhost:8000/api/v1")
API_KEY = os.environ.get("HERALD_API_KEY", "dev-key")


def check_backend() -> None:
    """Verify the server is reachable and healthy."""
    try:
        resp = httpx.get(f"{BASE}/health", timeout=5)
    except httpx.ConnectError:
        print(f"ERROR: Server not reachable at {BASE}")
        print("Start it with:  uvicorn herald.main:app --reload --port 8000")
        sys.exit(1)

    if resp.status_code != 200:
        print(f"ERROR: Health check returned {resp.status_code}")
        sys.exit(1)

    health = resp.json()
    print("Server health:")
    print(f"  Status:  {health['status']}")
    print(f"  Redis:   {'✓' if health['redis'] else '✗'}")
    print(f"  Workers: {health['queue']['workers']}")


def create_client() -> httpx.Client:
    """Check the server and return an httpx Client that sends the API key."""
    check_backend()
    return httpx.Client(
        base_url=BASE,
        timeout=10,
        headers={"X-API-Key": API_KEY},
    )
