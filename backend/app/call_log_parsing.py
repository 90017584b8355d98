"""
Call log parsing utilities.

Extracts list-view metadata from call log JSON and checks its structure.
"""
import json
import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

VALID_SPEAKERS = ("agent", "customer")
REQUIRED_FIELDS = ("callId", "timestamp", "duration", "agentId", "agentName")


def parse_duration(duration: Any) -> Optional[int]:
    """Convert "HH:MM:SS", "MM:SS" or a number of seconds into whole seconds."""
    if isinstance(duration, bool):
        return None
    if isinstance(duration, (int, float)):
        if not math.isfinite(duration) or duration < 0:
            return None
        return int(duration)
    if isinstance(duration, str):
        try:
            parts = [int(p) for p in duration.strip().split(":")]
        except ValueError:
            return None
        if len(parts) == 3:
            return parts[0] * 3600 + parts[1] * 60 + parts[2]
        if len(parts) == 2:
            return parts[0] * 60 + parts[1]
    return None


def parse_call_log_metadata(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Pull the display fields out of a parsed call log.

    Returns snake_case keys matching FileMetadata fields.
    """
    details = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    return {
        "call_id": _as_str(data.get("callId")),
        "agent_name": _as_str(data.get("agentName")),
        "agent_id": _as_str(data.get("agentId")),
        "call_duration": parse_duration(data.get("duration")),
        "call_timestamp": _as_str(data.get("timestamp")),
        "call_outcome": _as_str(details.get("callOutcome")),
    }


def _as_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def is_valid_iso_datetime(value: str) -> bool:
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
        return True
    except (TypeError, ValueError):
        return False


def validate_call_log_json(payload: Union[str, bytes, Dict[str, Any]]) -> Dict[str, Any]:
    """
    Validate call log structure.

    Returns:
        Dict with ``is_valid``, ``errors``, ``warnings`` and, when valid,
        the extracted ``metadata``
    """
    errors: List[str] = []
    warnings: List[str] = []

    if isinstance(payload, (str, bytes)):
        try:
            data = json.loads(payload)
        except ValueError as e:
            return {"is_valid": False, "errors": [f"Failed to parse JSON: {e}"], "warnings": []}
    else:
        data = payload

    if not isinstance(data, dict):
        return {"is_valid": False, "errors": ["Call log must be a JSON object"], "warnings": []}

    for name in REQUIRED_FIELDS:
        if data.get(name) in (None, ""):
            errors.append(f"Missing required field: {name}")

    transcript = data.get("transcript")
    if not isinstance(transcript, list):
        errors.append("Missing or invalid field: transcript (must be an array)")
    if "metadata" in data and not isinstance(data["metadata"], dict):
        errors.append("Invalid field: metadata (must be an object)")

    timestamp = data.get("timestamp")
    if timestamp and not (isinstance(timestamp, str) and is_valid_iso_datetime(timestamp)):
        errors.append("Invalid timestamp format (must be ISO 8601)")

    duration = data.get("duration")
    if duration not in (None, ""):
        if isinstance(duration, str):
            if parse_duration(duration) is None:
                errors.append('Invalid duration format: must be "MM:SS" or "HH:MM:SS"')
        elif isinstance(duration, (int, float)) and not isinstance(duration, bool):
            if parse_duration(duration) is None:
                errors.append("Invalid duration: must be a positive number")
        else:
            errors.append("Invalid duration type: must be string or number")

    if isinstance(transcript, list):
        for index, entry in enumerate(transcript):
            if not isinstance(entry, dict) or entry.get("speaker") not in VALID_SPEAKERS:
                errors.append(f"Invalid transcript entry {index}: speaker must be 'agent' or 'customer'")
                continue
            if not entry.get("text"):
                warnings.append(f"Transcript entry {index} has empty text")

    return {
        "is_valid": not errors,
        "errors": errors,
        "warnings": warnings,
        "metadata": parse_call_log_metadata(data) if not errors else None,
    }


def format_duration(seconds: Optional[int]) -> str:
    """Format seconds as MM:SS, or N/A when unknown."""
    if seconds is None:
        return "N/A"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes:02d}:{secs:02d}"


def format_agent_name(agent_name: str) -> str:
    """Abbreviate middle names: "John Michael Smith" -> "John M. Smith"."""
    parts = agent_name.split()
    if len(parts) <= 2:
        return " ".join(parts)
    middle = " ".join(f"{name[0]}." for name in parts[1:-1])
    return f"{parts[0]} {middle} {parts[-1]}"
