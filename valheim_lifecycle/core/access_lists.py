"""Player access lists the dedicated server reads from its save directory."""

from pathlib import Path
import re

ACCESS_LIST_FILES = {
    "admin": "adminlist.txt",
    "banned": "bannedlist.txt",
    "permitted": "permittedlist.txt",
}
_HEADERS = {
    "admin": "// List admin players ID  ONE per line",
    "banned": "// List banned players ID  ONE per line",
    "permitted": "// List permitted players ID ONE per line",
}


def parse_player_ids(value):
    """Split a space or comma separated ID list, keeping order and dropping repeats."""
    ids = []
    for item in re.split(r"[\s,]+", str(value or "")):
        if item and item not in ids:
            ids.append(item)
    return ids


def _atomic_write_text(path, text):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp = path.with_suffix(path.suffix + ".tmp")
    temp.write_text(text, encoding="utf-8")
    temp.replace(path)


def write_access_lists(config_dir, lists, log_action=None):
    """Write each non-empty list to its file under ``config_dir``.

    ``lists`` maps a kind from ``ACCESS_LIST_FILES`` to raw ID text. Kinds
    left empty keep whatever file the server already has.
    Returns the written paths.
    """
    written = []
    for kind, filename in ACCESS_LIST_FILES.items():
        ids = parse_player_ids(lists.get(kind))
        if not ids:
            continue
        path = Path(config_dir) / filename
        _atomic_write_text(path, "\n".join([_HEADERS[kind], *ids]) + "\n")
        written.append(path)
        if log_action is not None:
            log_action("access-list-written", f"{filename} ids={len(ids)}")
    return written
