import logging
from pathlib import Path
from typing import Iterable


ANONYMOUS = "anonymous"

MACHINE_ID_PATHS = (
    Path("/etc/machine-id"),
    Path("/var/lib/dbus/machine-id"),
)

logger = logging.getLogger(__name__)


def resolve_machine_id(paths: Iterable[Path] = MACHINE_ID_PATHS) -> str:
    """Return the host's stable machine id, or "anonymous" if none is readable."""
    for path in paths:
        try:
            value = Path(path).read_text(encoding="utf-8").strip()
        except OSError:
            continue
        if value:
            return value

    logger.warning('Cannot get machine unique ID, set machine-id to "%s"', ANONYMOUS)
    return ANONYMOUS
