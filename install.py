#!/usr/bin/env python3
"""Cross-platform local install script for lark-bot.

Usage:
    python install.py          # Runtime install
    python install.py --dev    # Development install (includes pytest)
"""

import os
import platform
import shutil
import subprocess
import sys

MIN_PYTHON = (3, 11)


def main() -> None:
    if sys.version_info < MIN_PYTHON:
        sys.exit(
            f"Error: Python {MIN_PYTHON[0]}.{MIN_PYTHON[1]}+ is required. "
            f"You have {sys.version_info.major}.{sys.version_info.minor}."
        )

    print(f"Python {sys.version_info.major}.{sys.version_info.minor} detected. OK.")

    dev = "--dev" in sys.argv
    project_dir = os.path.dirname(os.path.abspath(__file__))
    venv_dir = os.path.join(project_dir, ".venv")
    is_windows = platform.system() == "Windows"

    bin_dir = "Scripts" if is_windows else "bin"
    pip = os.path.join(venv_dir, bin_dir, "pip")

    if not os.path.isdir(venv_dir):
        print("Creating virtual environment...")
        subprocess.check_call([sys.executable, "-m", "venv", venv_dir])
    else:
        print("Virtual environment already exists.")

    print("Upgrading pip...")
    subprocess.check_call([pip, "install", "--upgrade", "pip"])

    target = "-e .[dev]" if dev else "."
    print(f"Installing lark-bot ({target})...")
    subprocess.check_call([pip, "install", *target.split()], cwd=project_dir)

    # Local SQLite store lives here
    os.makedirs(os.path.join(project_dir, "data"), exist_ok=True)

    for src, dst in [("config.example.yaml", "config.yaml"), (".env.example", ".env")]:
        src_path = os.path.join(project_dir, src)
        dst_path = os.path.join(project_dir, dst)
        if not os.path.exists(dst_path) and os.path.exists(src_path):
            shutil.copy(src_path, dst_path)
            print(f"Created {dst} from {src}")
        elif os.path.exists(dst_path):
            print(f"{dst} already exists, skipping.")

    activate_cmd = r".\.venv\Scripts\activate" if is_windows else "source .venv/bin/activate"

    print()
    print("=" * 50)
    print("  lark-bot installation complete!")
    print("=" * 50)
    print()
    print("Next steps:")
    print("  1. Edit .env - set LARK_APPID, LARK_APP_SECRET, LARK_TOKEN and AWS_AK/AWS_SK")
    print("  2. Edit config.yaml - choose models.kind (primary, rag, workflow, mock)")
    print(f"  3. Activate the virtual environment: {activate_cmd}")
    print("  4. Check config:     python -m lark_bot config-check")
    print("  5. Chat locally:     python -m lark_bot chat --kind mock")
    print()


if __name__ == "__main__":
    main()
