"""
Dot-path access into nested row data.

Rows parsed from import files are arbitrary JSON-like structures. Paths such
as ``location.coords.0`` walk dict keys and, for list containers, numeric
indices. Lookups never raise on a missing segment.
"""

from typing import Any, List


def split_path(path: str) -> List[str]:
    return [segment for segment in str(path).split(".") if segment != ""]


def _step(container: Any, segment: str) -> Any:
    if isinstance(container, dict):
        return container.get(segment)
    if isinstance(container, (list, tuple)):
        try:
            index = int(segment)
        except ValueError:
            return None
        if 0 <= index < len(container):
            return container[index]
        return None
    return None


def get_value_at_path(data: Any, path: str) -> Any:
    """
    Resolve a dot-separated path against nested dicts and lists.

    Args:
        data: Root object
        path: Dot path, numeric segments index into lists

    Returns:
        The value found, or None when any segment is missing
    """
    current = data
    for segment in split_path(path):
        if current is None:
            return None
        current = _step(current, segment)
    return current


def set_value_at_path(data: Any, path: str, value: Any) -> None:
    """
    Assign ``value`` at ``path``, creating intermediate dicts as needed.

    Existing list containers are indexed numerically; a numeric index past
    the end of a list is ignored rather than padding the list.
    """
    segments = split_path(path)
    if not segments:
        return

    current = data
    for segment in segments[:-1]:
        next_value = _step(current, segment)
        if not isinstance(next_value, (dict, list)):
            if isinstance(current, dict):
                next_value = {}
                current[segment] = next_value
            else:
                return
        current = next_value

    last = segments[-1]
    if isinstance(current, dict):
        current[last] = value
    elif isinstance(current, list):
        try:
            index = int(last)
        except ValueError:
            return
        if 0 <= index < len(current):
            current[index] = value
