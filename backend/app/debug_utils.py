"""
Debugging utilities for CallGuard.
Provides failure dumps for troubleshooting and the upload validation helper.
"""
import json
import logging
import sys
import tempfile
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import get_data_dir

logger = logging.getLogger('callguard.debug')


class DebugHelper:
    """Helper class for debugging operations."""

    def __init__(self, debug_dir: Optional[str] = None):
        self._debug_dir = Path(debug_dir) if debug_dir else None

    @property
    def debug_dir(self) -> Path:
        # Resolved lazily so CALLGUARD_DATA_DIR changes are honoured
        base = self._debug_dir or (get_data_dir() / "logs" / "debug")
        try:
            base.mkdir(parents=True, exist_ok=True)
        except OSError:
            base = Path(tempfile.gettempdir()) / "callguard_logs"
            base.mkdir(parents=True, exist_ok=True)
        return base

    def log_debug_info(self, operation: str, data: Dict[str, Any], filename: Optional[str] = None) -> Path:
        """
        Log debug information to a file for later analysis.

        Args:
            operation: Name of the operation being debugged
            data: Data to log
            filename: Optional custom filename
        """
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        filename = filename or f"{operation}_{timestamp}.json"
        filepath = self.debug_dir / filename

        debug_data = {
            "timestamp": datetime.now().isoformat(),
            "operation": operation,
            "data": data,
            "python_version": sys.version,
            "platform": sys.platform
        }

        with open(filepath, 'w') as f:
            json.dump(debug_data, f, indent=2, default=str)

        logger.debug(f"Debug info saved to: {filepath}")
        return filepath

    def capture_exception(self, operation: str, exception: Exception, context: Dict[str, Any] = None) -> Path:
        """
        Capture exception details for debugging.

        Args:
            operation: Name of the operation that failed
            exception: The exception that occurred
            context: Additional context information
        """
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        filepath = self.debug_dir / f"error_{operation}_{timestamp}.json"

        error_data = {
            "timestamp": datetime.now().isoformat(),
            "operation": operation,
            "exception_type": type(exception).__name__,
            "exception_message": str(exception),
            "traceback": "".join(traceback.format_exception(type(exception), exception, exception.__traceback__)),
            "context": context or {},
            "python_version": sys.version,
            "platform": sys.platform
        }

        with open(filepath, 'w') as f:
            json.dump(error_data, f, indent=2, default=str)

        logger.debug(f"Error details saved to: {filepath}")
        return filepath


def format_size(bytes_size: int) -> str:
    """Format a byte count in human-readable form."""
    if bytes_size >= 1024 * 1024 * 1024:
        return f"{bytes_size / (1024 * 1024 * 1024):.2f} GB"
    elif bytes_size >= 1024 * 1024:
        return f"{bytes_size / (1024 * 1024):.2f} MB"
    elif bytes_size >= 1024:
        return f"{bytes_size / 1024:.2f} KB"
    return f"{bytes_size} bytes"


def validate_file_upload(
    filename: Optional[str],
    size: Optional[int],
    allowed_extensions: List[str],
    max_size: int,
    content_type: Optional[str] = None,
    allowed_content_types: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """
    Validate an uploaded file's name and size.

    A file passes the type check when either its extension or its declared
    content type is allowed.

    Args:
        filename: Client-supplied filename
        size: Size in bytes, or None when not known yet
        allowed_extensions: List of allowed file extensions
        max_size: Maximum file size in bytes
        content_type: Client-declared MIME type, if any
        allowed_content_types: List of allowed MIME types

    Returns:
        Dict with validation results and any errors
    """
    validation_result = {
        "is_valid": True,
        "errors": [],
        "file_info": {}
    }

    if not filename:
        validation_result["is_valid"] = False
        validation_result["errors"].append("No file provided")
        return validation_result

    file_extension = Path(filename).suffix.lower()
    validation_result["file_info"]["extension"] = file_extension
    validation_result["file_info"]["filename"] = filename

    mime_type = (content_type or "").split(";")[0].strip().lower()
    validation_result["file_info"]["content_type"] = mime_type

    if file_extension not in allowed_extensions and mime_type not in (allowed_content_types or []):
        validation_result["is_valid"] = False
        validation_result["errors"].append("Only JSON files are allowed")

    if size is not None:
        validation_result["file_info"]["size"] = size
        if size > max_size:
            validation_result["is_valid"] = False
            validation_result["errors"].append(
                f"File size ({format_size(size)}) exceeds maximum allowed size ({format_size(max_size)})"
            )
        elif size == 0:
            validation_result["is_valid"] = False
            validation_result["errors"].append("File is empty")

    # Filenames are used directly as blob names
    suspicious_patterns = ["..", "/", "\\", ":", "*", "?", "\"", "<", ">", "|"]
    for pattern in suspicious_patterns:
        if pattern in filename:
            validation_result["is_valid"] = False
            validation_result["errors"].append(f"Suspicious characters in filename: {pattern}")
            break

    return validation_result


# Global debug helper instance (uses CALLGUARD_DATA_DIR when present)
debug_helper = DebugHelper()
