import glob
import logging
import os
import threading
from typing import List, Optional

from forwarder.features.periodic import PeriodicTask


# seconds; fixed policy, not a setting
ROTATION_REAP_INTERVAL = 60


def rotated_files(source_path: str) -> List[str]:
    """Sorted paths matching `<source_path>.*`; never the source itself."""
    return sorted(glob.glob(f"{glob.escape(source_path)}.*"))


class RotationReaper(PeriodicTask):
    """Deletes rotated copies of the alert file so disk usage stays bounded."""

    name = "RotationReaper"

    def __init__(
            self,
            source_path: str,
            interval: float = ROTATION_REAP_INTERVAL,
            stop_event: Optional[threading.Event] = None,
            logger: Optional[logging.Logger] = None,
    ):
        super().__init__(interval=interval, stop_event=stop_event, logger=logger)
        self.source_path = source_path

    def reap(self) -> List[str]:
        files = rotated_files(self.source_path)
        if not files:
            self.log.debug("No rotated log file found for %s", self.source_path)
            return []

        removed: List[str] = []
        for f in files:
            try:
                os.remove(f)
            except OSError as e:
                self.log.warning("Cannot remove %s file: %s", f, e)
                continue
            removed.append(f)
            self.log.info("File %s is removed.", f)
        return removed

    def tick(self) -> None:
        self.reap()
