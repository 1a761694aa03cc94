"""Tests for PII masking rules and the Masker catalog."""

import pytest

from keyai.errors import PatternError
from keyai.masker import (
    CUSTOM_RULE_PRIORITY,
    Masker,
    MaskingRule,
    build_masker,
    default_rules,
    mask_cpf,
    mask_credit_card,
    mask_email,
    mask_full,
    mask_phone,
)
from keyai.models import Transition, WindowInfo

# --- Test Classes ---


class TestReplacementGenerators:
    """Replacement generators keep only the non-identifying part."""

    def test_cpf_keeps_check_digits(self):
        assert mask_cpf("123.456.789-01") == "***.***.***-01"

    def test_cpf_short_input(self):
        assert mask_cpf("123") == "***.***.**-**"

    def test_email_keeps_first_char_and_domain(self):
        assert mask_email("joao.silva@example.com") == "j***@example.com"

    def test_email_without_local_part(self):
        assert mask_email("@example.com") == "***@***"

    def test_phone_keeps_last_four(self):
        assert mask_phone("(11) 98765-4321") == "(***) ***-4321"

    def test_card_keeps_last_four(self):
        assert mask_credit_card("4111 1111 1111 1234") == "**** **** **** 1234"

    def test_full_mask_preserves_length(self):
        assert mask_full("secret") == "******"


class TestDefaultMasking:
    """The built-in catalog on realistic text."""

    def test_cpf(self, masker: Masker):
        assert masker.mask("Meu CPF é 123.456.789-01") == "Meu CPF é ***.***.***-01"

    def test_cnpj(self, masker: Masker):
        assert masker.mask("CNPJ 12.345.678/0001-90 ok") == "CNPJ **.***.***/****-** ok"

    def test_rg(self, masker: Masker):
        assert masker.mask("RG 12.345.678-9") == "RG **.***.***-*"

    def test_credit_card(self, masker: Masker):
        assert masker.mask("card 4111 1111 1111 1234") == "card **** **** **** 1234"

    def test_email(self, masker: Masker):
        assert masker.mask("mail joao.silva@example.com now") == "mail j***@example.com now"

    def test_phone(self, masker: Masker):
        assert masker.mask("ligue (11) 98765-4321") == "ligue (***) ***-4321"

    def test_ipv4(self, masker: Masker):
        assert masker.mask("host 192.168.0.1") == "host ***.***.***.***"

    def test_sensitive_url(self, masker: Masker):
        masked = masker.mask("open https://api.example.com/v1?token=abc123")
        assert masked == "open https://***?***=***"

    def test_plain_text_untouched(self, masker: Masker):
        assert masker.mask("reunião amanhã às dez") == "reunião amanhã às dez"

    def test_empty_string(self, masker: Masker):
        assert masker.mask("") == ""

    def test_multiple_kinds_in_one_text(self, masker: Masker):
        masked = masker.mask("CPF 123.456.789-01 email ana@example.org")
        assert "123.456.789" not in masked
        assert "ana@" not in masked
        assert "a***@example.org" in masked

    @pytest.mark.parametrize(
        "text",
        [
            "Meu CPF é 123.456.789-01",
            "CNPJ 12.345.678/0001-90",
            "ligue (11) 98765-4321",
            "mail joao.silva@example.com",
            "host 10.0.0.254",
        ],
    )
    def test_masking_is_idempotent(self, masker: Masker, text: str):
        """Masking already-masked text changes nothing."""
        once = masker.mask(text)
        assert masker.mask(once) == once

    def test_match_counts(self, masker: Masker):
        masker.mask("a@example.com b@example.com")
        assert masker.match_counts()["email"] == 2


class TestMaskEvent:
    """mask_event redacts symbol and window context."""

    def test_masks_window_title(self, masker: Masker, make_event):
        window = WindowInfo(title="Inbox - ana@example.org", application="Mail", pid=7, timestamp=5)
        event = make_event(symbol="x", window=window)

        masked = masker.mask_event(event)

        assert masked.window.title == "Inbox - a***@example.org"
        assert masked.window.application == "Mail"
        assert masked.window.pid == 7
        assert masked.window.timestamp == 5
        assert masked.symbol == "x"
        assert masked.transition is Transition.PRESS

    def test_event_without_window(self, masker: Masker, make_event):
        masked = masker.mask_event(make_event(symbol="Space"))
        assert masked.window is None
        assert masked.symbol == "Space"

    def test_original_event_unchanged(self, masker: Masker, make_event):
        window = WindowInfo(title="ana@example.org", application="Mail")
        event = make_event(window=window)
        masker.mask_event(event)
        assert event.window.title == "ana@example.org"


class TestCatalogManagement:
    """Adding, removing and toggling rules."""

    def test_default_rule_order(self):
        names = [r.name for r in default_rules()]
        assert names[:3] == ["cpf", "cnpj", "credit_card"]
        assert names[-1] == "ipv4"

    def test_rules_sorted_by_priority(self, masker: Masker):
        priorities = [r.priority for r in masker.list_rules()]
        assert priorities == sorted(priorities, reverse=True)

    def test_invalid_pattern_raises(self):
        with pytest.raises(PatternError) as exc_info:
            MaskingRule(name="broken", pattern="([a-z")
        assert exc_info.value.name == "broken"
        assert exc_info.value.pattern == "([a-z"

    def test_invalid_custom_pattern_leaves_catalog(self, masker: Masker):
        before = masker.rule_names()
        with pytest.raises(PatternError):
            masker.add_custom_pattern("broken", "(unclosed")
        assert masker.rule_names() == before

    def test_custom_pattern_masks_fully(self, masker: Masker):
        rule = masker.add_custom_pattern("employee_id", r"EMP-\d{4}")
        assert rule.priority == CUSTOM_RULE_PRIORITY
        assert masker.mask("id EMP-1234") == "id ********"

    def test_custom_rule_runs_after_builtins(self, masker: Masker):
        masker.add_custom_pattern("employee_id", r"EMP-\d{4}")
        assert masker.rule_names()[-1] == "employee_id"

    def test_add_rule_replaces_same_name(self, masker: Masker):
        masker.add_custom_pattern("code", r"A\d")
        masker.add_custom_pattern("code", r"B\d")
        assert masker.rule_names().count("code") == 1
        assert masker.mask("A1 B2") == "A1 **"

    def test_remove_rule(self, masker: Masker):
        assert masker.remove_rule("email") is True
        assert "email" not in masker.rule_names()
        assert masker.mask("ana@example.org") == "ana@example.org"

    def test_remove_unknown_rule(self, masker: Masker):
        assert masker.remove_rule("nope") is False

    def test_disable_and_enable(self, masker: Masker):
        assert masker.set_enabled("ipv4", False) is True
        assert masker.mask("10.0.0.1") == "10.0.0.1"
        masker.set_enabled("ipv4", True)
        assert masker.mask("10.0.0.1") == "***.***.***.***"

    def test_set_enabled_unknown(self, masker: Masker):
        assert masker.set_enabled("nope", False) is False

    def test_empty_catalog(self):
        assert Masker(rules=[]).mask("123.456.789-01") == "123.456.789-01"

    def test_rule_to_dict(self):
        rule = MaskingRule("code", r"\d+", "custom", priority=3)
        assert rule.to_dict() == {
            "name": "code",
            "pattern": r"\d+",
            "category": "custom",
            "enabled": True,
            "priority": 3,
        }


class TestBuildMasker:
    """Catalog built from persisted configuration."""

    def test_adds_custom_patterns(self):
        masker = build_masker([{"name": "ticket", "pattern": r"TCK-\d+", "category": "work"}], [])
        rule = next(r for r in masker.list_rules() if r.name == "ticket")
        assert rule.category == "work"
        assert masker.mask("TCK-42") == "******"

    def test_disables_rules(self):
        masker = build_masker([], ["email"])
        rule = next(r for r in masker.list_rules() if r.name == "email")
        assert rule.enabled is False

    def test_skips_broken_entries(self):
        masker = build_masker(
            [{"name": "broken", "pattern": "(x"}, {"pattern": "no-name"}, {"name": "ok", "pattern": "ok"}],
            ["unknown_rule"],
        )
        names = masker.rule_names()
        assert "broken" not in names
        assert "ok" in names
