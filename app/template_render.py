from __future__ import annotations

from pathlib import Path
from typing import Any
from urllib.parse import urlencode

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape


TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

_ENV: Environment | None = None


def _url(base: str, **args: Any) -> str:
    query = []
    for key, value in args.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            query.extend((f"{key}[]", str(v)) for v in value)
        else:
            query.append((key, str(value)))
    if not query:
        return base
    sep = "&" if "?" in base else "?"
    return base + sep + urlencode(query)


def _env() -> Environment:
    global _ENV
    if _ENV is None:
        env = Environment(
            loader=FileSystemLoader(str(TEMPLATES_DIR)),
            autoescape=select_autoescape(["html"]),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        env.globals["url"] = _url
        _ENV = env
    return _ENV


def render_template(name: str, context: dict[str, Any]) -> str:
    return _env().get_template(name).render(**context)


def render_view(view: str, data: dict[str, Any]) -> str:
    """Render ``app/templates/<view>.html`` with ``data`` as its context."""
    return render_template(f"{view}.html", data)
