"""
Tests for email template rendering.
"""

import pytest
from jinja2 import UndefinedError

from certs_monitor.errors import TemplateNotFoundError
from certs_monitor.renderer import TemplateRenderer

SETTINGS_URL = "https://certs.example/?token=abc123"


class TestTemplateRenderer:
    """Test the packaged templates."""

    @pytest.fixture
    def renderer(self):
        return TemplateRenderer()

    def test_render_expiring(self, renderer):
        html = renderer.render_expiring_domain(
            domain="example.com",
            status_label="EXPIRING IN 7 DAYS",
            status_class="critical",
            expires_in="in 6 days",
            expires_date="March 7, 2026",
            issuer="Let's Encrypt",
            settings_url=SETTINGS_URL,
        )

        assert "example.com" in html
        assert "EXPIRING IN 7 DAYS" in html
        assert "in 6 days" in html
        assert "March 7, 2026" in html
        assert SETTINGS_URL in html
        assert "#d64545" in html

    def test_render_certificate_changed(self, renderer):
        html = renderer.render_certificate_changed(
            domain="example.com",
            issuer="DigiCert Inc",
            expires_in="in 300 days",
            expires_date="December 25, 2026",
            previous_fingerprint="AA:AA",
            fingerprint="BB:BB",
            settings_url=SETTINGS_URL,
        )

        assert "New certificate detected for example.com" in html
        assert "AA:AA" in html
        assert "BB:BB" in html

    def test_render_heartbeat_sections(self, renderer):
        html = renderer.render_heartbeat(
            generated_date="2026-03-01",
            critical=[
                {
                    "domain": "expired.example.com",
                    "expires_in": "2 days ago",
                    "expires_date": "February 27, 2026",
                    "issuer": None,
                }
            ],
            warning=[],
            errors=[{"domain": "down.example.com", "error": "TLS connection timed out"}],
            healthy=[],
            pending=[{"domain": "new.example.com"}],
            total_domains=3,
            settings_url=SETTINGS_URL,
        )

        assert "Critical" in html
        assert "Warning" not in html
        assert "Healthy" not in html
        assert "expired.example.com" in html
        assert "Unknown" in html
        assert "TLS connection timed out" in html
        assert "new.example.com" in html
        assert "3 monitored domains" in html
        assert "2026-03-01" in html

    def test_values_are_escaped(self, renderer):
        html = renderer.render_heartbeat(
            generated_date="2026-03-01",
            critical=[],
            warning=[],
            errors=[{"domain": "<script>.example.com", "error": "<b>bad</b>"}],
            healthy=[],
            pending=[],
            total_domains=1,
            settings_url=SETTINGS_URL,
        )

        assert "<script>" not in html
        assert "&lt;script&gt;" in html
        assert "&lt;b&gt;bad&lt;/b&gt;" in html

    def test_unknown_template(self, renderer):
        with pytest.raises(TemplateNotFoundError):
            renderer.render("welcome", {})

    def test_missing_variable_is_an_error(self, renderer):
        with pytest.raises(UndefinedError):
            renderer.render("expiring", {"domain": "example.com"})
