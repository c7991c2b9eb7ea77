"""Registry of the four tools and their controllers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Iterator, Mapping

from ..events import EventBus
from ..services.errors import ApiError
from .attachments import MAX_ATTACHMENTS, AttachmentExtractor, AttachmentSet, PreviewFactory
from .controller import HistoryCommitter, ToolInvocationController
from .cooldown import Scheduler
from .credits import CreditLedgerView
from .models import DEFAULT_TOOL_CONFIGS, ToolConfig, ToolId

if TYPE_CHECKING:  # pragma: no cover
    from ..services.ai_service import AIService
    from ..services.tool_config import ToolConfigService
    from ..services.wallet import WalletService

LOGGER = logging.getLogger(__name__)


class ToolCatalog:
    """Builds one controller per tool, all sharing a single credit ledger.

    :meth:`load` overlays server-side tool settings and credit costs onto
    the built-in defaults. Unreachable endpoints leave the defaults in place.
    """

    def __init__(
        self,
        ai_service: AIService,
        wallet: WalletService,
        *,
        tool_configs: ToolConfigService | None = None,
        history: HistoryCommitter | None = None,
        event_bus: EventBus | None = None,
        scheduler: Scheduler | None = None,
        preview_factory: PreviewFactory | None = None,
        max_attachments: int = MAX_ATTACHMENTS,
    ) -> None:
        self._ai = ai_service
        self._wallet = wallet
        self._tool_configs = tool_configs
        self._history = history
        self._bus = event_bus
        self._scheduler = scheduler
        self._preview_factory = preview_factory
        self._max_attachments = max_attachments
        self._ledger = CreditLedgerView(wallet, event_bus=event_bus)
        self._configs: Dict[ToolId, ToolConfig] = dict(DEFAULT_TOOL_CONFIGS)
        self._controllers: Dict[ToolId, ToolInvocationController[Any]] = {}

    @property
    def ledger(self) -> CreditLedgerView:
        return self._ledger

    def config(self, tool_id: ToolId | str) -> ToolConfig:
        return self._configs[ToolId(tool_id)]

    def configs(self) -> Mapping[ToolId, ToolConfig]:
        return dict(self._configs)

    async def load(self, *, force_refresh: bool = False) -> Mapping[ToolId, ToolConfig]:
        """Merge remote tool settings and credit costs into the configs."""

        remote: Mapping[str, Mapping[str, Any]] = {}
        if self._tool_configs is not None:
            remote = await self._tool_configs.get_configs(force_refresh=force_refresh)
        try:
            costs = await self._wallet.get_credit_costs()
        except ApiError as exc:
            LOGGER.warning("Failed to fetch credit costs; using defaults: %s", exc)
            costs = {}

        for tool_id, default in DEFAULT_TOOL_CONFIGS.items():
            merged = default.merge_remote(remote.get(tool_id.value))
            if tool_id.value in costs:
                merged = merged.with_cost(costs[tool_id.value])
            self._configs[tool_id] = merged
            controller = self._controllers.get(tool_id)
            if controller is not None:
                controller.config = merged
        LOGGER.debug(
            "Loaded tool configs: %s",
            {tool.value: (cfg.credit_cost, cfg.max_length, cfg.enabled) for tool, cfg in self._configs.items()},
        )
        return dict(self._configs)

    def controller(self, tool_id: ToolId | str) -> ToolInvocationController[Any]:
        key = ToolId(tool_id)
        controller = self._controllers.get(key)
        if controller is None:
            attachments = AttachmentSet(
                AttachmentExtractor(self._ai),
                max_attachments=self._max_attachments,
                preview_factory=self._preview_factory,
                event_bus=self._bus,
            )
            controller = ToolInvocationController(
                self._configs[key],
                self._ai,
                self._ledger,
                attachments,
                committer=self._history,
                scheduler=self._scheduler,
                event_bus=self._bus,
            )
            self._controllers[key] = controller
        return controller

    def __iter__(self) -> Iterator[ToolInvocationController[Any]]:
        return iter([self.controller(tool_id) for tool_id in ToolId])

    async def drain(self) -> None:
        for controller in list(self._controllers.values()):
            await controller.drain()
            await controller.attachments.wait_idle()

    def dispose(self) -> None:
        for controller in self._controllers.values():
            controller.dispose()
        self._controllers.clear()


__all__ = ["ToolCatalog"]
