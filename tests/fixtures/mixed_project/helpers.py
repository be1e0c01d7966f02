"""Row helpers."""

DEFAULT_SEPARATOR = ","


def normalize(row):
    """Strip and lowercase a row."""
    return row.strip().lower()


def load_rows(path):
    """Read non-empty lines."""
    with open(path) as handle:
        return [line for line in handle.read().split("\n") if line]
