"""Minimal stand-in for ``npm install --prefix <dir> ... <package>``.

The unscoped package name picks the behaviour: ``missing`` fails like a 404,
``slow`` never finishes, ``nobin`` installs a package without an executable.
Any other name installs a launcher for fake_plugin.py; if the name is one of
its modes the launcher runs that mode. With ``--pid-dir <dir>`` the launched
plugin records its pid in ``<dir>/<name>.pid``.
"""

import json
import os
import stat
import sys
import time
from pathlib import Path

PLUGIN_MODES = {"two_tools", "silent", "exit", "error", "zero_tools", "noisy", "wrong_version"}
FAKE_PLUGIN = Path(__file__).resolve().parent / "fake_plugin.py"


def main():
    args = sys.argv[1:]
    pid_dir = None
    if args[:1] == ["--pid-dir"]:
        pid_dir, args = Path(args[1]), args[2:]
    prefix = Path(args[args.index("--prefix") + 1])
    spec = args[-1]
    name = "@" + spec[1:].partition("@")[0] if spec.startswith("@") else spec.partition("@")[0]
    unscoped = name.rsplit("/", 1)[-1]

    if unscoped == "missing":
        sys.stderr.write(f"npm ERR! 404 Not Found - GET https://registry.npmjs.org/{name}\n")
        sys.exit(1)
    if unscoped == "slow":
        time.sleep(600)

    package_dir = prefix / "node_modules" / name
    package_dir.mkdir(parents=True, exist_ok=True)
    package_json = {"name": name, "version": "1.0.0"}
    if unscoped != "nobin":
        package_json["bin"] = {unscoped: "index.js"}
        bin_dir = prefix / "node_modules" / ".bin"
        bin_dir.mkdir(parents=True, exist_ok=True)
        mode = unscoped if unscoped in PLUGIN_MODES else "two_tools"
        launcher = bin_dir / unscoped
        pid_arg = f' "{pid_dir / (unscoped + ".pid")}"' if pid_dir else ""
        launcher.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_PLUGIN}" {mode}{pid_arg}\n')
        launcher.chmod(launcher.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    (package_dir / "package.json").write_text(json.dumps(package_json))
    print(f"added 1 package in {os.getpid() % 3 + 1}s")


if __name__ == "__main__":
    main()
