"""Annotation templates in the Prometheus flavour of Go text/template.

Only the subset used by alerting rules in practice is supported:
label and value references, a few humanize helpers, printf, and trim markers.
"""

from __future__ import annotations

import math
import re
from typing import Any, Callable, Dict, List

from src.ruler.services.query_client import Labels

_ACTION_RE = re.compile(r"\{\{(-?)(.*?)(-?)\}\}", re.S)
_PIPE_SPLIT_RE = re.compile(r'\|(?=(?:[^"]*"[^"]*")*[^"]*$)')
_ARG_RE = re.compile(r'"(?:[^"\\]|\\.)*"|\S+')
_LABEL_REF_RE = re.compile(r"^(?:\$labels|\.Labels)\.([a-zA-Z_][a-zA-Z0-9_]*)$")
_NUMBER_RE = re.compile(r"^-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?$")


class TemplateError(Exception):
    pass


def format_value(v: float) -> str:
    """Print a float the way Go's %v does for float64."""
    if math.isnan(v):
        return "NaN"
    if math.isinf(v):
        return "+Inf" if v > 0 else "-Inf"
    if v == int(v) and abs(v) < 1e21:
        return str(int(v))
    return repr(v)


def _si(v: float, big: bool) -> str:
    prefixes = ["k", "M", "G", "T", "P", "E", "Z", "Y"] if big else ["m", "u", "n", "p", "f", "a", "z", "y"]
    prefix = ""
    for p in prefixes:
        if big and abs(v) < 1000:
            break
        if not big and abs(v) >= 1:
            break
        v = v / 1000 if big else v * 1000
        prefix = p
    return f"{v:.4g}{prefix}"


def humanize(v: Any) -> str:
    v = _to_float(v)
    if v == 0 or math.isnan(v) or math.isinf(v):
        return f"{v:.4g}"
    return _si(v, big=abs(v) >= 1)


def humanize_percentage(v: Any) -> str:
    return f"{_to_float(v) * 100:.4g}%"


def humanize_duration(v: Any) -> str:
    v = _to_float(v)
    if math.isnan(v) or math.isinf(v):
        return f"{v:.4g}"
    if v == 0:
        return "0s"
    if abs(v) >= 1:
        sign = "-" if v < 0 else ""
        v = abs(v)
        total = int(v)
        seconds = total % 60
        minutes = (total // 60) % 60
        hours = (total // 3600) % 24
        days = total // 86400
        if days:
            return f"{sign}{days}d {hours}h {minutes}m {seconds}s"
        if hours:
            return f"{sign}{hours}h {minutes}m {seconds}s"
        if minutes:
            return f"{sign}{minutes}m {seconds}s"
        return f"{sign}{v:.4g}s"
    return f"{_si(v, big=False)}s"


def _printf(fmt: str, *args: Any) -> str:
    # Go verbs that Python %-formatting does not know.
    py_fmt = fmt.replace("%v", "%s")
    conv: List[Any] = []
    specs = re.findall(r"%[-+ #0]*\d*(?:\.\d+)?([a-zA-Z%])", py_fmt)
    specs = [s for s in specs if s != "%"]
    for spec, arg in zip(specs, args):
        if spec in "dxXo":
            conv.append(int(_to_float(arg)))
        elif spec in "eEfFgG":
            conv.append(_to_float(arg))
        elif isinstance(arg, float):
            conv.append(format_value(arg))
        else:
            conv.append(arg)
    try:
        return py_fmt % tuple(conv)
    except (TypeError, ValueError) as exc:
        raise TemplateError(f"printf {fmt!r}: {exc}") from exc


def _to_float(v: Any) -> float:
    try:
        return float(v)
    except (TypeError, ValueError) as exc:
        raise TemplateError(f"expected a number, got {v!r}") from exc


_FUNCS: Dict[str, Callable[..., str]] = {
    "humanize": humanize,
    "humanizePercentage": humanize_percentage,
    "humanizeDuration": humanize_duration,
    "printf": _printf,
    "toUpper": lambda s: str(s).upper(),
    "toLower": lambda s: str(s).lower(),
    "title": lambda s: str(s).title(),
}


def _resolve_term(term: str, labels: Labels, value: float) -> Any:
    if term in ("$value", ".Value"):
        return value
    m = _LABEL_REF_RE.match(term)
    if m:
        return labels.get(m.group(1), "")
    if term.startswith('"') and term.endswith('"') and len(term) >= 2:
        return term[1:-1].replace('\\"', '"').replace("\\n", "\n").replace("\\\\", "\\")
    if _NUMBER_RE.match(term):
        return float(term)
    raise TemplateError(f"unsupported term {term!r}")


def _call(stage: str, labels: Labels, value: float, piped: List[Any]) -> Any:
    tokens = _ARG_RE.findall(stage.strip())
    if not tokens:
        raise TemplateError("empty pipeline stage")
    head, rest = tokens[0], tokens[1:]
    if head in _FUNCS:
        args = [_resolve_term(t, labels, value) for t in rest] + piped
        return _FUNCS[head](*args)
    if rest or piped:
        raise TemplateError(f"{head!r} is not a function")
    return _resolve_term(head, labels, value)


def _eval_action(action: str, labels: Labels, value: float) -> str:
    stages = _PIPE_SPLIT_RE.split(action)
    result = _call(stages[0], labels, value, [])
    for stage in stages[1:]:
        result = _call(stage, labels, value, [result])
    if isinstance(result, float):
        return format_value(result)
    return str(result)


# PUBLIC_INTERFACE
def render(template: str, labels: Labels, value: float) -> str:
    """
    Expand an annotation template for one alert instance.

    Errors don't propagate: the annotation text becomes "<error expanding template: ...>",
    which keeps the alert itself evaluable.
    """
    out: List[str] = []
    pos = 0
    trim_next = False
    try:
        for m in _ACTION_RE.finditer(template):
            text = template[pos : m.start()]
            if trim_next:
                text = text.lstrip()
            if m.group(1):
                text = text.rstrip()
            out.append(text)
            action = m.group(2).strip()
            if not (action.startswith("/*") and action.endswith("*/")):
                out.append(_eval_action(action, labels, value))
            trim_next = bool(m.group(3))
            pos = m.end()
    except TemplateError as exc:
        return f"<error expanding template: {exc}>"

    tail = template[pos:]
    out.append(tail.lstrip() if trim_next else tail)
    return "".join(out)


def render_all(templates: Dict[str, str], labels: Labels, value: float) -> Dict[str, str]:
    return {k: render(t, labels, value) for k, t in templates.items()}
