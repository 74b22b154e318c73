"""Tests for core/gateway.py."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from hostguard.core.firewall import ClearedPayload, SensitiveDataFirewall
from hostguard.core.gateway import ExternalAnalysisGateway
from hostguard.errors import GatewayError
from hostguard.models.gateway import ExternalAnalysisStatus, GatewayResult
from hostguard.models.run import NoticeKind
from hostguard.providers.anthropic import AnthropicProvider

PRIVATE_KEY = "4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


def _provider(result: GatewayResult | None = None, error: Exception | None = None) -> MagicMock:
    provider = MagicMock()
    provider.name = "anthropic"
    provider.model = "claude-test"
    provider.analyze = AsyncMock(
        return_value=result or GatewayResult(provider="anthropic", model="claude-test", analysis_text="ok"),
        side_effect=error,
    )
    return provider


def _gateway(provider=None, **kwargs) -> ExternalAnalysisGateway:
    return ExternalAnalysisGateway(SensitiveDataFirewall(), provider=provider, **kwargs)


def _notice_kinds(run) -> list[NoticeKind]:
    return [n.kind for n in run.notices]


class TestFirewallGate:
    @pytest.mark.asyncio
    async def test_private_key_in_prompt_blocks_provider(self, sample_run):
        provider = _provider()
        run = await _gateway(provider).analyze(sample_run, prompt_override=f"Investigate {PRIVATE_KEY} please")

        provider.analyze.assert_not_called()
        analysis = run.external_analysis
        assert analysis.status == ExternalAnalysisStatus.SKIPPED_FOR_SECURITY
        assert [m.pattern_name for m in analysis.firewall_matches] == ["Potential private key"]
        assert analysis.firewall_matches[0].count == 1
        assert NoticeKind.FIREWALL_TRIP in _notice_kinds(run)

    @pytest.mark.asyncio
    async def test_trip_metadata_is_masked(self, sample_run):
        run = await _gateway(_provider()).analyze(sample_run, prompt_override=PRIVATE_KEY)
        dumped = run.model_dump_json()
        assert PRIVATE_KEY not in dumped

    @pytest.mark.asyncio
    async def test_provider_receives_cleared_payload(self, sample_run):
        provider = _provider()
        run = await _gateway(provider).analyze(sample_run)

        provider.analyze.assert_awaited_once()
        payload = provider.analyze.call_args.args[0]
        assert isinstance(payload, ClearedPayload)
        assert payload.is_cleared
        assert "FindingID: process#0" in payload.prompt
        assert payload.summary["total_findings"] == 3
        assert run.external_analysis.status == ExternalAnalysisStatus.COMPLETED
        assert run.external_analysis.result.analysis_text == "ok"

    @pytest.mark.asyncio
    async def test_sensitive_finding_sanitized_before_gate(self, sample_run, make_result):
        results = dict(sample_run.results)
        results["process"] = make_result("process", "high", command=f"miner --key {PRIVATE_KEY}")
        run = sample_run.model_copy(update={"results": results})

        provider = _provider()
        updated = await _gateway(provider).analyze(run)

        assert updated.external_analysis.status == ExternalAnalysisStatus.COMPLETED
        assert PRIVATE_KEY not in provider.analyze.call_args.args[0].prompt


class TestSkips:
    @pytest.mark.asyncio
    async def test_opt_out(self, sample_run):
        provider = _provider()
        run = await _gateway(provider, enabled=False).analyze(sample_run)
        assert run.external_analysis.status == ExternalAnalysisStatus.SKIPPED_OPT_OUT
        assert run.external_analysis.skipped
        provider.analyze.assert_not_called()
        assert NoticeKind.EXTERNAL_ANALYSIS_SKIPPED in _notice_kinds(run)

    @pytest.mark.asyncio
    async def test_no_provider(self, sample_run):
        run = await _gateway(None).analyze(sample_run)
        assert run.external_analysis.status == ExternalAnalysisStatus.SKIPPED_NO_PROVIDER
        assert NoticeKind.EXTERNAL_ANALYSIS_SKIPPED in _notice_kinds(run)

    @pytest.mark.asyncio
    async def test_below_threshold(self, sample_run):
        provider = _provider()
        run = await _gateway(provider, min_findings_to_analyze=10).analyze(sample_run)
        assert run.external_analysis.status == ExternalAnalysisStatus.SKIPPED_BELOW_THRESHOLD
        provider.analyze.assert_not_called()

    @pytest.mark.asyncio
    async def test_gateway_error_keeps_run(self, sample_run):
        provider = _provider(error=GatewayError("503 | upstream down sk-ant-abcdef123456", provider="anthropic"))
        run = await _gateway(provider).analyze(sample_run)

        analysis = run.external_analysis
        assert analysis.status == ExternalAnalysisStatus.FAILED
        assert "sk-ant-abcdef123456" not in analysis.error
        assert NoticeKind.EXTERNAL_ANALYSIS_FAILED in _notice_kinds(run)
        assert run.results == sample_run.results
        assert run.overall_risk == sample_run.overall_risk


class TestAuditLog:
    @pytest.mark.asyncio
    async def test_written_after_clearance(self, sample_run, tmp_path):
        gateway = _gateway(_provider(), enable_logging=True, log_dir=tmp_path)
        await gateway.analyze(sample_run)

        files = list(tmp_path.glob("*.json"))
        assert len(files) == 1
        entry = json.loads(files[0].read_text(encoding="utf-8"))
        assert entry["provider"] == "anthropic"
        assert entry["response"]["analysis_text"] == "ok"

    @pytest.mark.asyncio
    async def test_not_written_on_trip(self, sample_run, tmp_path):
        gateway = _gateway(_provider(), enable_logging=True, log_dir=tmp_path)
        await gateway.analyze(sample_run, prompt_override=PRIVATE_KEY)
        assert list(tmp_path.glob("*.json")) == []

    @pytest.mark.asyncio
    async def test_disabled_by_default(self, sample_run, tmp_path):
        gateway = _gateway(_provider(), log_dir=tmp_path)
        await gateway.analyze(sample_run)
        assert list(tmp_path.glob("*.json")) == []


class TestFromConfig:
    def test_reads_external_section(self, config):
        config["external_analysis"].update({"enabled": False, "mode": "full", "min_findings_to_analyze": 4})
        gateway = ExternalAnalysisGateway.from_config(config)
        assert gateway.enabled is False
        assert gateway.prompt_builder.mode == "full"
        assert gateway.min_findings_to_analyze == 4
        assert gateway.provider is None


class TestProviderFailures:
    @pytest.mark.asyncio
    async def test_unexpected_exception_recorded_as_failure(self, sample_run):
        provider = _provider(error=AttributeError("'NoneType' object has no attribute 'get'"))
        run = await _gateway(provider).analyze(sample_run)

        analysis = run.external_analysis
        assert analysis.status == ExternalAnalysisStatus.FAILED
        assert "AttributeError" in analysis.error
        assert analysis.provider == "anthropic"
        assert NoticeKind.EXTERNAL_ANALYSIS_FAILED in _notice_kinds(run)
        assert run.results == sample_run.results

    @pytest.mark.asyncio
    async def test_malformed_provider_body_keeps_run(self, sample_run, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
        response = httpx.Response(200, json={"content": None}, request=httpx.Request("POST", AnthropicProvider.API_URL))
        provider = AnthropicProvider({}, {"retry_attempts": 1, "retry_delay_seconds": 0})
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock, return_value=response):
            run = await _gateway(provider).analyze(sample_run)

        assert run.external_analysis.status == ExternalAnalysisStatus.FAILED
        assert run.external_analysis.error.startswith("Malformed response")
        assert run.overall_risk == sample_run.overall_risk
