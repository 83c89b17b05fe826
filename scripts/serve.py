#!/usr/bin/env python3
from __future__ import annotations

import logging
import os
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))


def main() -> int:
    host = os.getenv("SPARK_ORCH_HOST", "127.0.0.1")
    port = int(os.getenv("SPARK_ORCH_PORT", "8000"))
    reload = os.getenv("SPARK_ORCH_RELOAD", "0").strip().lower() in {"1", "true", "yes", "y", "on"}
    log_level = os.getenv("SPARK_ORCH_LOG_LEVEL", "info")

    try:
        import uvicorn  # type: ignore
    except ImportError as e:
        print("Missing dependency: uvicorn. Install it in your runtime environment.", file=sys.stderr)
        print(str(e), file=sys.stderr)
        return 1

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "spark_orchestrator.api.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
