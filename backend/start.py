#!/usr/bin/env python3
"""
Start the CallGuard backend server.
Host and port come from Settings (HOST / PORT environment variables or .env).
"""
import logging
import subprocess
import sys
import time
from pathlib import Path

# Set up logging for startup timing
logging.basicConfig(
    level=logging.INFO,
    format='[WEB_STARTUP] %(message)s'
)
logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main():
    """Start uvicorn with the configured host and port."""
    start = time.perf_counter()
    from backend.app.config import settings

    port = str(settings.port)
    logger.info(f"phase=backend_script_start port={port} trigger_mode={settings.analysis_trigger_mode}")

    print(f"🚀 Starting CallGuard backend on port {port}")
    print(f"📍 Health check: http://127.0.0.1:{port}/health")
    print(f"📚 API docs: http://127.0.0.1:{port}/docs")
    print("-" * 50)

    cmd = [
        sys.executable, "-m", "uvicorn",
        "backend.app.main:app",
        "--host", settings.host,
        "--port", port,
    ]
    if settings.debug:
        cmd.append("--reload")

    try:
        subprocess.run(cmd, cwd=str(ROOT))
    except KeyboardInterrupt:
        print("\n🛑 Backend server stopped")
    except Exception as e:
        elapsed = (time.perf_counter() - start) * 1000
        logger.error(f"phase=backend_script_error elapsed={elapsed:.3f}ms error={e}")
        print(f"❌ Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
