"""Context message describing the local environment to the model.

Only allow-listed variables are reported, and any of those whose name looks
like a credential is still dropped. The name filter is a floor, not a
guarantee that a value holds nothing sensitive.
"""
import os
from typing import Dict, Iterable, Mapping, Optional

SECRET_MARKERS = ("KEY", "TOKEN", "SECRET", "PASSWORD")


def looks_secret(name: str) -> bool:
    upper = name.upper()
    return any(marker in upper for marker in SECRET_MARKERS)


def safe_environment(allowlist: Iterable[str],
                     environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    environ = os.environ if environ is None else environ
    safe = {}
    for name in allowlist:
        if name in environ and not looks_secret(name):
            safe[name] = environ[name]
    return safe


def environment_summary(allowlist: Iterable[str],
                        environ: Optional[Mapping[str, str]] = None) -> str:
    variables = safe_environment(allowlist, environ)
    lines = "\n".join(f"{k}={v}" for k, v in variables.items())
    return f"Available variables {lines}"
