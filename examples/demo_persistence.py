#!/usr/bin/env python3
"""Demo of vfshell sessions sharing a host state directory."""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import tempfile

from vfshell.terminal import TerminalSession, TerminalConfig


def run(session, commands):
    for cmd in commands:
        print(f"$ {cmd if len(cmd) < 60 else cmd[:56] + '...'}")
        output = session.run_command(cmd)
        if output:
            print(output)


def main():
    print("=" * 60)
    print("vfshell - Persistence Demo")
    print("=" * 60)

    state_dir = tempfile.mkdtemp(prefix='vfshell-demo-')
    config = TerminalConfig(hostname='demo', state_directory=state_dir,
                            max_vfs_size=64 * 1024)

    print("\n1. First session: build a workspace...")
    with TerminalSession(config) as session:
        run(session, [
            "pwd",
            "echo 'Welcome to vfshell!' > README.md",
            "mkdir -p projects/alpha",
            "touch projects/alpha/main.py projects/alpha/notes.txt",
            "sleep 0.2 &",
            "jobs",
            "ls -l",
        ])
        for message in session.wait_for_jobs():
            print(message)

    print("\n2. Second session: the workspace was restored from disk...")
    with TerminalSession(config) as session:
        run(session, [
            "cat README.md",
            "ls projects/alpha",
        ])

        print("\n3. Writes beyond the quota are rolled back...")
        run(session, [
            "echo " + "x" * 70000 + " > huge.txt",
            "ls",
        ])

    print("\n" + "=" * 60)
    print("Demo complete!")
    print(f"Snapshots stored in: {state_dir}")
    print("Start an interactive shell on them with:")
    print(f"  vfshell --state-dir {state_dir}")
    print("=" * 60)


if __name__ == "__main__":
    main()
