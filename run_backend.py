import importlib.util
import os
import platform
import subprocess
import sys

from qaforge.config import ServerConfig

BACKEND_MODULES = ("fastapi", "uvicorn", "websockets", "sqlalchemy", "aiosqlite")


def check_dependencies():
    missing = [name for name in BACKEND_MODULES if importlib.util.find_spec(name) is None]
    if missing:
        print("Missing backend dependencies.")
        print(f"Please run: pip install {' '.join(missing)}")
        sys.exit(1)


if __name__ == "__main__":
    check_dependencies()
    config = ServerConfig.load()
    print(f"Starting QA Forge Backend on http://localhost:{config.port}")

    # Reloading would kill in-flight agent subprocesses with every edit
    enable_reload = os.environ.get("QAFORGE_BACKEND_RELOAD", "0") == "1"
    if enable_reload and platform.system() == "Windows":
        print("Note: disabling --reload on Windows to allow agent subprocesses.")
        enable_reload = False

    command = [
        sys.executable, "-m", "uvicorn", "qaforge.web.backend.main:app",
        "--host", config.host,
        "--port", str(config.port),
    ]
    if enable_reload:
        command.append("--reload")

    try:
        subprocess.run(command, check=True)
    except KeyboardInterrupt:
        print("\nStopping server...")
