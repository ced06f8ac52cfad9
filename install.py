#!/usr/bin/env python3
"""Cross-platform install script for shop-agent.

Usage:
    python install.py                 # Production install
    python install.py --dev           # Also installs pytest and pytest-asyncio
    python install.py --seed          # Seed the tool router from tool_examples.yaml afterwards
"""

import argparse
import os
import platform
import shutil
import subprocess
import sys

MIN_PYTHON = (3, 11)
PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
VENV_DIR = os.path.join(PROJECT_DIR, ".venv")
IS_WINDOWS = platform.system() == "Windows"


def venv_exe(name: str) -> str:
    return os.path.join(VENV_DIR, "Scripts" if IS_WINDOWS else "bin", name)


def ensure_venv(dev: bool) -> None:
    if os.path.isdir(VENV_DIR):
        print("Virtual environment already exists.")
    else:
        print("Creating virtual environment...")
        subprocess.check_call([sys.executable, "-m", "venv", VENV_DIR])

    pip = venv_exe("pip")
    subprocess.check_call([pip, "install", "--upgrade", "pip"])
    target = ".[dev]" if dev else "."
    print(f"Installing shop-agent ({'editable, with test extras' if dev else 'release'})...")
    subprocess.check_call([pip, "install", *(["-e"] if dev else []), target], cwd=PROJECT_DIR)


def ensure_files() -> None:
    os.makedirs(os.path.join(PROJECT_DIR, "data"), exist_ok=True)
    for src, dst in [("config.example.yaml", "config.yaml"), (".env.example", ".env")]:
        dst_path = os.path.join(PROJECT_DIR, dst)
        if os.path.exists(dst_path):
            print(f"{dst} already exists, skipping.")
            continue
        shutil.copy(os.path.join(PROJECT_DIR, src), dst_path)
        print(f"Created {dst} from {src}")


def run_cli(*args: str) -> int:
    return subprocess.call([venv_exe("python"), "-m", "shop_agent", *args], cwd=PROJECT_DIR)


def main() -> None:
    if sys.version_info < MIN_PYTHON:
        sys.exit(f"Error: Python {MIN_PYTHON[0]}.{MIN_PYTHON[1]}+ is required.")

    parser = argparse.ArgumentParser(description="Install shop-agent into .venv")
    parser.add_argument("--dev", action="store_true")
    parser.add_argument("--seed", action="store_true")
    args = parser.parse_args()

    ensure_venv(args.dev)
    ensure_files()

    if run_cli("config-check") != 0:
        print("config.yaml does not validate yet; fix it and rerun with --seed to seed the router.")
    elif args.seed:
        run_cli("seed", "tool_examples.yaml")

    activate = r".\.venv\Scripts\activate" if IS_WINDOWS else "source .venv/bin/activate"
    print()
    steps = ["set ANTHROPIC_API_KEY, OPENAI_API_KEY and the TELEGRAM_* values in .env", activate]
    if not args.seed:
        steps.append("python -m shop_agent seed tool_examples.yaml")
    steps.append("python -m shop_agent start")
    print("Next steps:")
    for n, step in enumerate(steps, 1):
        print(f"  {n}. {step}")


if __name__ == "__main__":
    main()
