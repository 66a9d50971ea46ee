"""Serialise ConfigDocuments as JSON-ready dicts, YAML or .properties text."""

from typing import Any

import yaml
from jinja2 import Environment, PackageLoader

from .store import ConfigDocument


FORMATS = ("json", "yaml", "properties")


def _escape_key(key: str) -> str:
    out = []
    for ch in str(key):
        if ch in "\\=: #!":
            out.append("\\" + ch)
        else:
            out.append(ch)
    return "".join(out)


def _format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        # Only empty containers survive flattening
        return ""
    text = str(value)
    return (text.replace("\\", "\\\\")
                .replace("\n", "\\n")
                .replace("\r", "\\r")
                .replace("\t", "\\t"))


def _get_template_env() -> Environment:
    env = Environment(
        loader=PackageLoader("beacon", "templates"),
        keep_trailing_newline=True,
        trim_blocks=True,
    )
    env.filters["prop_key"] = _escape_key
    env.filters["prop_value"] = _format_value
    return env


def to_yaml(doc: ConfigDocument) -> str:
    """Flat ``key: value`` YAML of the merged properties."""
    return yaml.safe_dump(dict(sorted(doc.properties.items())),
                          default_flow_style=False, sort_keys=False)


def to_properties(doc: ConfigDocument) -> str:
    """Java-style ``.properties`` text of the merged properties."""
    template = _get_template_env().get_template("application.properties.j2")
    return template.render(doc=doc, properties=sorted(doc.properties.items()))
