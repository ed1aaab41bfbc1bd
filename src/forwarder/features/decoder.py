import json
from typing import Any, Dict


AlertRecord = Dict[str, Any]

SENSOR_ID_KEY = "sensor_id"


class DecodeError(Exception):
    """Raised when a raw line is not a JSON object."""
    pass


class AlertDecoder:
    """Turns one raw alert line into an AlertRecord stamped with the sensor
    id."""

    def __init__(self, sensor_id: str) -> None:
        self.sensor_id = sensor_id

    def decode(self, line: str) -> AlertRecord:
        try:
            record = json.loads(line)
        except (ValueError, RecursionError, TypeError) as e:  # JSONDecodeError is a ValueError
            raise DecodeError(f"cannot parse event log: {e}") from e

        if not isinstance(record, dict):
            raise DecodeError(f"expected a JSON object, got {type(record).__name__}")

        record[SENSOR_ID_KEY] = self.sensor_id
        return record

    def __call__(self, line: str) -> AlertRecord:
        return self.decode(line)
