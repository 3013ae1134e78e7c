"""
Tests for tenant policy resolution and input sanitization.
Run with: pytest tests/test_policy.py -v
"""
import json
import pytest
from datetime import datetime, timedelta
from sqlalchemy.ext.asyncio import AsyncSession

from sessionguard.models.user import Tenant
from sessionguard.services.policy import (
    DEFAULT_POLICY,
    PolicyEngine,
    TenantPolicy,
    compute_expiry,
    policy_from_tenant,
    sessions_to_evict,
)
from sessionguard.services.sanitizer import (
    sanitize_device_info,
    sanitize_text,
    sanitize_user_agent,
    serialize_device_info,
)


class TestPolicyEngine:
    """Tenant policy lookup with defaults."""

    def test_defaults(self):
        assert DEFAULT_POLICY == TenantPolicy(
            max_concurrent_sessions=1,
            enforce_ip_country_check=True,
            session_timeout_minutes=15,
        )

    @pytest.mark.asyncio
    async def test_missing_tenant_uses_defaults(self, db_session: AsyncSession):
        engine = PolicyEngine(db_session)

        assert await engine.get_policy("no-such-tenant") == DEFAULT_POLICY
        assert await engine.get_policy(None) == DEFAULT_POLICY

    @pytest.mark.asyncio
    async def test_configured_tenant(self, db_session: AsyncSession, tenant_factory):
        await tenant_factory(
            tenant_id="acme",
            max_concurrent_sessions=3,
            enforce_ip_country_check=False,
            session_timeout_minutes=60,
        )

        policy = await PolicyEngine(db_session).get_policy("acme")

        assert policy.max_concurrent_sessions == 3
        assert policy.enforce_ip_country_check is False
        assert policy.session_timeout_minutes == 60

    @pytest.mark.asyncio
    async def test_unset_fields_fall_back_individually(self, db_session: AsyncSession, tenant_factory):
        await tenant_factory(
            tenant_id="partial",
            max_concurrent_sessions=None,
            enforce_ip_country_check=None,
            session_timeout_minutes=30,
        )

        policy = await PolicyEngine(db_session).get_policy("partial")

        assert policy.max_concurrent_sessions == 1
        assert policy.enforce_ip_country_check is True
        assert policy.session_timeout_minutes == 30

    def test_non_positive_values_fall_back(self):
        tenant = Tenant(id="bad", max_concurrent_sessions=0, session_timeout_minutes=-5)

        policy = policy_from_tenant(tenant)

        assert policy.max_concurrent_sessions == 1
        assert policy.session_timeout_minutes == 15

    def test_compute_expiry(self):
        now = datetime(2024, 1, 1, 9, 0)
        policy = TenantPolicy(1, True, 15)

        assert compute_expiry(policy, now) == now + timedelta(minutes=15)

    @pytest.mark.parametrize("active,max_sessions,expected", [
        (0, 1, 0),
        (1, 1, 1),
        (4, 1, 4),
        (1, 3, 0),
        (2, 3, 0),
        (3, 3, 1),
        (5, 3, 3),
    ])
    def test_sessions_to_evict(self, active, max_sessions, expected):
        policy = TenantPolicy(max_sessions, True, 15)

        assert sessions_to_evict(active, policy) == expected


class TestSanitizer:
    """Sanitization of client-supplied metadata."""

    def test_user_agent_strips_markup_and_control_chars(self):
        raw = "Mozilla/5.0\x00 <script>alert(1)</script>\n\tSafari"

        cleaned = sanitize_user_agent(raw)

        assert "<script>" not in cleaned
        assert "\x00" not in cleaned
        assert "alert" not in cleaned
        assert cleaned == "Mozilla/5.0 Safari"

    def test_markup_stripped_before_truncation(self):
        raw = "<i>" + "a" * 10 + "</i> & more"

        assert sanitize_text(raw, 5) == "aaaaa"
        assert sanitize_text(raw, 100) == "aaaaaaaaaa & more"

    def test_unclosed_markup_is_dropped(self):
        assert sanitize_user_agent("curl/8.0 <script>fetch('/x')") == "curl/8.0"
        assert sanitize_user_agent("<img src=x onerror=alert(1)") is None
        assert sanitize_user_agent("a < b > c") == "a b c"

    def test_user_agent_truncated(self):
        assert len(sanitize_user_agent("a" * 5000, max_length=512)) == 512

    def test_blank_user_agent_is_none(self):
        assert sanitize_user_agent("   ") is None
        assert sanitize_user_agent(None) is None

    def test_device_info_flattened_and_bounded(self):
        info = {
            "platform": "<b>web</b>",
            "screen": {"w": 1920, "h": 1080},
            "touch": False,
            "cores": 8,
        }

        cleaned = sanitize_device_info(info)

        assert cleaned["platform"] == "web"
        assert cleaned["screen"] == '{"h": 1080, "w": 1920}'
        assert cleaned["touch"] is False
        assert cleaned["cores"] == 8

    def test_device_info_key_limit(self):
        info = {f"k{i}": i for i in range(100)}

        assert len(sanitize_device_info(info, max_keys=32)) == 32

    def test_device_info_length_limit(self):
        info = {f"k{i}": "x" * 200 for i in range(20)}

        cleaned = sanitize_device_info(info, max_length=1000)

        assert len(json.dumps(cleaned)) <= 1000
        assert "k0" in cleaned

    def test_non_dict_device_info(self):
        assert serialize_device_info(None) == "{}"
        assert sanitize_device_info(["not", "a", "dict"]) == {}
