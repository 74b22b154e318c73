"""Top-level run: scheduler phases followed by the external analysis gateway."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..errors import NoDetectorsError
from ..models.run import AnalysisRun
from ..providers.base import GatewayProvider, get_gateway_provider
from .detectors import CORE_PHASE, DetectorRegistry, build_mock_registry, build_registry_from_config
from .firewall import SensitiveDataFirewall
from .gateway import ExternalAnalysisGateway
from .scheduler import ProgressCallback, Scheduler

logger = logging.getLogger(__name__)


def resolve_registry(config: dict, dry_run: bool = False) -> DetectorRegistry:
    registry = build_mock_registry() if dry_run else build_registry_from_config(config)
    if not registry.keys(CORE_PHASE):
        raise NoDetectorsError("No core detectors configured (set detectors.core or use --dry-run)")
    return registry


async def run_analysis(
    config: dict,
    registry: Optional[DetectorRegistry] = None,
    provider: Optional[GatewayProvider] = None,
    progress: Optional[ProgressCallback] = None,
    cancel_event: Optional[asyncio.Event] = None,
    dry_run: bool = False,
) -> AnalysisRun:
    """Run both phases, then the optional external analysis.

    With no provider given, the provider named in config is used; in dry-run
    mode no provider is ever built.
    """
    registry = registry or resolve_registry(config, dry_run=dry_run)

    scheduler = Scheduler.from_config(config, registry, progress=progress, cancel_event=cancel_event)
    run = await scheduler.run()
    logger.info(
        "Analysis complete: %d detectors, %d findings, overall risk %s",
        len(run.results), run.summary.total_findings, run.overall_risk.value,
    )

    if provider is None and not dry_run:
        provider = get_gateway_provider(config)

    firewall = SensitiveDataFirewall.from_config(config)
    gateway = ExternalAnalysisGateway.from_config(config, provider=provider, firewall=firewall)
    return await gateway.analyze(run)
