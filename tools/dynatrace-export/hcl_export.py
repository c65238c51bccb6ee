"""
HCL generation for Dynatrace resources.

Converts REST API objects (camelCase JSON dicts) into Terraform attribute maps
and renders them as HCL resource blocks.
"""

import re
from typing import Any, Dict, Iterable, List, Optional, TextIO

# Keys the API returns but Terraform never manages.
DEFAULT_SKIP = {"id", "metadata"}

_FILENAME_UNSAFE = re.compile(r'[\\/:*?"<>|\s]')
MAX_FILENAME_LEN = 100

_CAMEL_KEY = re.compile(r'[a-z][a-zA-Z0-9]*')
_SNAKE_KEY = re.compile(r'[a-z][a-z0-9]*(_[a-z][a-z0-9]*)*')


def hcl_string(value: str) -> str:
    """Escape and quote a string for HCL."""
    escaped = (value.replace('\\', '\\\\').replace('"', '\\"')
               .replace('\n', '\\n').replace('${', '$${').replace('%{', '%%{'))
    return f'"{escaped}"'


def hcl_value(value: Any, indent: int = 2) -> str:
    """Convert a Python value to HCL representation."""
    if isinstance(value, bool):
        return "true" if value else "false"
    elif isinstance(value, (int, float)):
        return str(value)
    elif isinstance(value, str):
        return hcl_string(value)
    elif isinstance(value, list):
        items = ", ".join(hcl_value(v, indent) for v in value)
        return f"[{items}]"
    elif isinstance(value, dict):
        pad = " " * (indent + 2)
        lines = []
        for k, v in value.items():
            lines.append(f"{pad}{hcl_string(k)} = {hcl_value(v, indent + 2)}")
        return "{\n" + "\n".join(lines) + "\n" + " " * indent + "}"
    elif value is None:
        return "null"
    else:
        return hcl_string(str(value))


def escape(name: str) -> str:
    """Convert a display name to a valid Terraform resource label."""
    result = re.sub(r'[^a-zA-Z0-9_-]', '_', name)
    if result and result[0].isdigit():
        result = '_' + result
    if not result:
        result = '_unnamed'
    return result


def escf(name: str) -> str:
    """Convert a display name to a fragment usable inside a file name."""
    result = _FILENAME_UNSAFE.sub('_', name)
    result = result.strip('.')
    if not result:
        result = '_unnamed'
    return result[:MAX_FILENAME_LEN]


def camel_to_snake(name: str) -> str:
    result = re.sub(r'([a-z0-9])([A-Z])', r'\1_\2', name)
    result = re.sub(r'([A-Z]+)([A-Z][a-z])', r'\1_\2', result)
    return result.lower()


def snake_to_camel(name: str) -> str:
    head, *tail = name.split('_')
    return head + "".join(part[:1].upper() + part[1:] for part in tail)


def _encode_key(key: str) -> str:
    # Only field names are converted. Data keys such as entity types
    # ("HOST", "AUTO_TAGS") or acronyms ("httpURL") must survive a round trip.
    if _CAMEL_KEY.fullmatch(key):
        snake = camel_to_snake(key)
        if snake_to_camel(snake) == key:
            return snake
    return key


def _decode_key(key: str) -> str:
    return snake_to_camel(key) if _SNAKE_KEY.fullmatch(key) else key


def encode(rest_object: Dict[str, Any], skip: Optional[Iterable[str]] = None,
           verbatim: Iterable[str] = ()) -> Dict[str, Any]:
    """Convert an API object into a Terraform attribute map.

    Field names become snake_case at every level, ``None`` values are dropped
    and top-level keys named in ``skip`` (identifiers, metadata) are removed.
    Values of fields named in ``verbatim`` are data maps and are copied as is.
    """
    skip = DEFAULT_SKIP if skip is None else set(skip)
    verbatim = set(verbatim)
    return {
        _encode_key(k): v if k in verbatim else _encode_value(v, verbatim)
        for k, v in rest_object.items()
        if k not in skip and v is not None
    }


def _encode_value(value: Any, verbatim) -> Any:
    if isinstance(value, dict):
        return {_encode_key(k): v if k in verbatim else _encode_value(v, verbatim)
                for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_encode_value(v, verbatim) for v in value]
    return value


def decode(attrs: Dict[str, Any], verbatim: Iterable[str] = ()) -> Dict[str, Any]:
    """Convert a Terraform attribute map back into an API object."""
    return _decode_value(attrs, set(verbatim))


def _decode_value(value: Any, verbatim) -> Any:
    if isinstance(value, dict):
        result = {}
        for k, v in value.items():
            key = _decode_key(k)
            result[key] = v if key in verbatim else _decode_value(v, verbatim)
        return result
    if isinstance(value, list):
        return [_decode_value(v, verbatim) for v in value]
    return value


def render_resource(resource_type: str, label: str, attrs: Dict[str, Any],
                    comments: Optional[List[str]] = None) -> str:
    """Render a single HCL resource block."""
    lines = []
    if comments:
        for c in comments:
            lines.append(f"# {c}")
    lines.append(f'resource "{resource_type}" "{label}" {{')
    for key, value in attrs.items():
        lines.append(f"  {key} = {hcl_value(value)}")
    lines.append("}")
    return "\n".join(lines)


def export(rest_object: Dict[str, Any], fp: TextIO, resource_type: str, label: str,
           *comments: str, skip: Optional[Iterable[str]] = None,
           verbatim: Iterable[str] = ()) -> None:
    """Serialize ``rest_object`` as a resource block and write it to ``fp``."""
    if not isinstance(rest_object, dict):
        raise TypeError(f"{resource_type}.{label}: expected an API object, got {type(rest_object).__name__}")
    block = render_resource(resource_type, label, encode(rest_object, skip, verbatim), list(comments))
    fp.write(block + "\n")
