from __future__ import annotations

import argparse

import uvicorn

from recyclability_ai.config import Settings


def main() -> None:  # pragma: no cover - process entrypoint
    ap = argparse.ArgumentParser(description="Run the recyclability web service")
    ap.add_argument("--host", default="0.0.0.0")
    ap.add_argument("--port", type=int, default=None, help="Defaults to the configured app port")
    a = ap.parse_args()
    port = int(a.port) if a.port is not None else Settings.load().app.port
    uvicorn.run("recyclability_ai.api.app:create_app", factory=True, host=str(a.host), port=port)


if __name__ == "__main__":
    main()
