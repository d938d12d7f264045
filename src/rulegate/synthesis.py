"""Engine configuration synthesis for a single validation attempt.

Each attempt gets a minimal routing document: one direct egress proxy, one
file-backed rule provider pointing at the artifact under test, a rule sending
its matches to that proxy, and a catch-all fallback. The document is handed to
the engine as a base64 token on its command line and is never written to disk.
"""

import base64
from pathlib import Path

import yaml

from rulegate.models import Behavior

PROXY_NAME = "direct1"
PROVIDER_NAME = "geo_rules"
PROVIDER_FORMAT = "mrs"
PROVIDER_INTERVAL = 3000


def render_config(port: int, behavior: Behavior | str, artifact_path: str | Path,
                  log_level: str = "info") -> dict:
    """Build the engine configuration document for one attempt.

    Args:
        port: Mixed (HTTP + SOCKS) listen port for the engine
        behavior: Rule provider behavior kind
        artifact_path: Rule-set file the provider loads; not checked for existence
        log_level: Engine log verbosity

    Returns:
        Configuration document as plain data
    """
    return {
        "mixed-port": port,
        "mode": "rule",
        "log-level": log_level,
        "allow-lan": False,
        "profile": {
            "store-selected": False,
            "store-fake-ip": False,
        },
        "proxies": [
            {"name": PROXY_NAME, "type": "direct", "ip-version": "ipv4-prefer"},
        ],
        "rules": [
            f"RULE-SET,{PROVIDER_NAME},{PROXY_NAME}",
            "MATCH,DIRECT",
        ],
        "rule-providers": {
            PROVIDER_NAME: {
                "type": "file",
                "behavior": Behavior(behavior).value,
                "format": PROVIDER_FORMAT,
                "path": str(artifact_path),
                "interval": PROVIDER_INTERVAL,
            },
        },
    }


def render_yaml(port: int, behavior: Behavior | str, artifact_path: str | Path,
                log_level: str = "info") -> str:
    """Render the configuration document as YAML text."""
    document = render_config(port, behavior, artifact_path, log_level)
    return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)


def synthesize(port: int, behavior: Behavior | str, artifact_path: str | Path,
               log_level: str = "info") -> str:
    """Produce the opaque config token passed to the engine via ``-config``."""
    config_text = render_yaml(port, behavior, artifact_path, log_level)
    return base64.b64encode(config_text.encode("utf-8")).decode("ascii")


def decode_token(token: str) -> str:
    """Reverse ``synthesize``; only used for inspection and diagnostics."""
    return base64.b64decode(token.encode("ascii")).decode("utf-8")
