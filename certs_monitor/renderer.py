"""
Email template rendering for Certs Monitor.
"""

from typing import Any, Dict, List, Mapping, Optional, TypedDict

from jinja2 import Environment, PackageLoader, StrictUndefined, TemplateNotFound, select_autoescape

from certs_monitor.errors import TemplateNotFoundError
from certs_monitor.logger import get_logger

TEMPLATE_FILES = {
    "expiring": "expiring.html",
    "certificate_changed": "certificate_changed.html",
    "heartbeat": "heartbeat.html",
}


class DomainInfo(TypedDict):
    domain: str
    expires_in: str
    expires_date: str
    issuer: Optional[str]


class DomainError(TypedDict):
    domain: str
    error: str


class PendingDomain(TypedDict):
    domain: str


class TemplateRenderer:
    """
    Renders email bodies from packaged Jinja2 templates.

    Compiled templates are cached per name by the Jinja2 environment; callers
    only ever supply data.
    """

    def __init__(self, environment: Optional[Environment] = None):
        self.logger = get_logger("renderer")
        self.environment = environment or Environment(
            loader=PackageLoader("certs_monitor", "templates"),
            autoescape=select_autoescape(["html"]),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render(self, template_name: str, data: Mapping[str, Any]) -> str:
        """
        Render a named template.

        Args:
            template_name: One of the keys of TEMPLATE_FILES
            data: Template context

        Returns:
            Rendered HTML

        Raises:
            TemplateNotFoundError: If the template is unknown
        """
        filename = TEMPLATE_FILES.get(template_name)
        if filename is None:
            raise TemplateNotFoundError(f"Template '{template_name}' not found")

        try:
            template = self.environment.get_template(filename)
        except TemplateNotFound as e:
            raise TemplateNotFoundError(f"Template '{template_name}' not found") from e

        return template.render(**data)

    def render_expiring_domain(
        self,
        *,
        domain: str,
        status_label: str,
        status_class: str,
        expires_in: str,
        expires_date: str,
        issuer: str,
        settings_url: str,
    ) -> str:
        return self.render(
            "expiring",
            {
                "domain": domain,
                "status_label": status_label,
                "status_class": status_class,
                "expires_in": expires_in,
                "expires_date": expires_date,
                "issuer": issuer,
                "settings_url": settings_url,
            },
        )

    def render_certificate_changed(
        self,
        *,
        domain: str,
        issuer: str,
        expires_in: str,
        expires_date: str,
        previous_fingerprint: str,
        fingerprint: str,
        settings_url: str,
    ) -> str:
        return self.render(
            "certificate_changed",
            {
                "domain": domain,
                "issuer": issuer,
                "expires_in": expires_in,
                "expires_date": expires_date,
                "previous_fingerprint": previous_fingerprint,
                "fingerprint": fingerprint,
                "settings_url": settings_url,
            },
        )

    def render_heartbeat(
        self,
        *,
        generated_date: str,
        critical: List[DomainInfo],
        warning: List[DomainInfo],
        errors: List[DomainError],
        healthy: List[DomainInfo],
        pending: List[PendingDomain],
        total_domains: int,
        settings_url: str,
    ) -> str:
        data: Dict[str, Any] = {
            "generated_date": generated_date,
            "critical": critical,
            "warning": warning,
            "errors": errors,
            "healthy": healthy,
            "pending": pending,
            "total_domains": total_domains,
            "settings_url": settings_url,
        }
        return self.render("heartbeat", data)
