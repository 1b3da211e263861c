#!/usr/bin/env python3
"""
Development launcher for camarchive.

- Stops camarchive.service on startup if it is running
- Runs the daemon in the foreground with verbose logging (DEV=1)
- Ctrl-C exits cleanly
"""

import os
import subprocess
import sys

from camarchive import daemon

SERVICE = "camarchive.service"


def stop_service():
    try:
        active = subprocess.run(["systemctl", "is-active", "--quiet", SERVICE], check=False)
    except OSError:
        return
    if active.returncode == 0:
        print(f"[dev] Stopping {SERVICE} ...")
        subprocess.run(["systemctl", "stop", SERVICE], check=False)


def main():
    stop_service()
    os.environ.setdefault("DEV", "1")
    print("[dev] Running camarchive daemon (Ctrl-C to exit)")
    try:
        return daemon.main(sys.argv[1:])
    except KeyboardInterrupt:
        print("[dev] Exiting dev mode")
        return 0


if __name__ == "__main__":
    sys.exit(main())
