"""
Certbot adapter — Let's Encrypt certificate issuance.
"""

from __future__ import annotations

import shutil
from pathlib import Path

from hostplan.adapters.base import CertificateIssuer
from hostplan.adapters.shell.command import run_command

DEFAULT_LIVE_DIR = "/etc/letsencrypt/live"
_ISSUE_TIMEOUT = 600


class CertbotIssuer(CertificateIssuer):
    def __init__(self, live_dir: str = DEFAULT_LIVE_DIR):
        self._live_dir = Path(live_dir)

    @property
    def name(self) -> str:
        return "certbot"

    def is_available(self) -> bool:
        return shutil.which("certbot") is not None

    def has_certificate(self, domain: str) -> bool:
        return (self._live_dir / domain / "fullchain.pem").is_file()

    def issue(self, domain: str, email: str, plugin: str = "nginx") -> str:
        # certonly: the site config stays owned by its FileWrite step
        cmd = [
            "certbot", "certonly", f"--{plugin}",
            "-d", domain, "--non-interactive", "--agree-tos", "--email", email,
        ]
        return run_command(cmd, timeout=_ISSUE_TIMEOUT).stdout

    def revoke(self, domain: str) -> str:
        return run_command(
            ["certbot", "delete", "--cert-name", domain, "--non-interactive"],
            timeout=120,
        ).stdout
