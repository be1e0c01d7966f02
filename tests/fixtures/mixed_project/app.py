"""Command entry point for the mixed sample."""

import subprocess

from helpers import normalize, load_rows


def run(path):
    """Load rows from *path* and print them normalized."""
    rows = load_rows(path)
    for row in rows:
        if row:
            print(normalize(row))
        else:
            print("empty")
    return len(rows)


def shell(command):
    return subprocess.run(command, shell=True)
