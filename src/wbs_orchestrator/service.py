"""Service facade used by the HTTP API and the CLI."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any

from .config import AppConfig
from .errors import ProjectNotFound, ValidationError, WbsError
from .models import Project, WbsItem
from .provisioning import ProvisioningWorkflow
from .remote import DedupeGuard, RemoteGateway, RetryableRemoteClient, RetryPolicy, Webhook
from .remote.client import SmartsheetGateway
from .store import CacheStore, StoreStats
from .sync import ImportResult, PollingFallback, PortfolioProcessor, PortfolioSyncResult, WbsImporter
from .wbs import HierarchyBuilder, Reconciler, ReconcileResult, TreeFlattener, WbsTree

logger = logging.getLogger(__name__)

WEBHOOK_NAME = "WBS Orchestrator portfolio"


@dataclass
class WbsState:
    """A project and its numbered tree, as shown to the UI."""

    project: Project
    tree: WbsTree


class WbsService:
    """
    Wires the store, the remote client and the workflows together.

    The Smartsheet gateway is created lazily so that read-only commands
    (``status``, ``clear-cache``, ``GET`` endpoints) work without network
    access or a valid token.
    """

    def __init__(
        self,
        config: AppConfig,
        store: CacheStore | None = None,
        gateway: RemoteGateway | None = None,
        guard: DedupeGuard | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            config: Application configuration
            store: Cache store (defaults to one at ``config.app.database_path``)
            gateway: Remote gateway (defaults to the Smartsheet SDK gateway)
            guard: Dedupe guard shared by every remote call of this process
            sleep: Awaitable used between retries
        """
        self.config = config
        self.store = store or CacheStore(config.app.database_path)
        self.guard = guard or DedupeGuard()
        self._gateway = gateway
        self._sleep = sleep
        self._remote: RetryableRemoteClient | None = None

    @property
    def gateway(self) -> RemoteGateway:
        """Get or create the Smartsheet gateway."""
        if self._gateway is None:
            self._gateway = SmartsheetGateway(self.config.smartsheet.access_token)
        return self._gateway

    @property
    def remote(self) -> RetryableRemoteClient:
        """Get or create the retrying remote client."""
        if self._remote is None:
            self._remote = RetryableRemoteClient(
                self.gateway,
                RetryPolicy.from_config(self.config.retry),
                self.guard,
                sleep=self._sleep,
            )
        return self._remote

    @property
    def contacts(self) -> dict[str, str]:
        return self.config.smartsheet.contacts

    @property
    def workflow(self) -> ProvisioningWorkflow:
        return ProvisioningWorkflow(
            self.store, self.remote, self.config.smartsheet, self.config.app.app_base_url
        )

    @property
    def processor(self) -> PortfolioProcessor:
        return PortfolioProcessor(self.store, self.remote, self.workflow, self.config)

    def actor(self, actor: str | None) -> str:
        return actor or self.config.app.default_actor

    # ==================== Projects ====================

    def get_project(self, project_ref: str) -> Project:
        """
        Look up a live project by id, falling back to its code.

        Raises:
            ProjectNotFound: If neither matches
        """
        project = self.store.get_project(project_ref) or self.store.get_project_by_code(project_ref)
        if project is None:
            raise ProjectNotFound(project_ref)
        return project

    def list_projects(self) -> list[Project]:
        return self.store.list_projects()

    # ==================== WBS ====================

    def get_state(self, project_ref: str) -> WbsState:
        """Current cached tree of a project, with codes, depth and completion."""
        project = self.get_project(project_ref)
        tree = HierarchyBuilder().build(self.store.list_items(project.id))
        return WbsState(project=project, tree=tree)

    async def save_tree(
        self, project_ref: str, items: list[WbsItem], actor: str | None = None
    ) -> ReconcileResult:
        """
        Save an edited tree: build, flatten, reconcile with cache and sheet.

        Raises:
            ProjectNotFound: Unknown project
            ValidationError: Invalid items (``CycleDetected`` for loops)
        """
        project = self.get_project(project_ref)
        remote = self.remote if project.workspace is not None else None
        reconciler = Reconciler(self.store, remote, self.contacts)

        incoming = [replace(item, project_id=project.id) for item in items]
        tree = HierarchyBuilder().build(reconciler.resolve_identities(project.id, incoming))
        flat = TreeFlattener().flatten(tree)

        result = await reconciler.reconcile(project, flat, self.actor(actor))
        result.warnings = tree.warnings + result.warnings
        return result

    async def sync_from_remote(self, project_ref: str, actor: str | None = None) -> ImportResult:
        """Refresh the cache of one project from its WBS sheet."""
        project = self.get_project(project_ref)
        importer = WbsImporter(self.store, self.remote, self.contacts)
        return await importer.import_project(project, self.actor(actor))

    def clear_cache(self, project_ref: str | None = None, actor: str | None = None) -> int:
        """
        Drop cached WBS items of one project, or of every project.

        Items are reloaded by the next :meth:`sync_from_remote`.
        """
        target_id = "*"
        project_id: str | None = None
        if project_ref:
            project_id = self.get_project(project_ref).id
            target_id = project_id

        removed = self.store.clear_items(project_id)
        self.store.audit(
            self.actor(actor), "cache.cleared", "project" if project_id else "cache", target_id,
            items=removed,
        )
        logger.info(f"Cleared {removed} cached item(s)")
        return removed

    # ==================== Portfolio ====================

    async def check_new_projects(
        self, verify_existing: bool = False, prune: bool = False, actor: str | None = None
    ) -> PortfolioSyncResult:
        return await self.processor.check_new_projects(
            verify_existing=verify_existing, prune=prune, actor=self.actor(actor)
        )

    async def poll(self, actor: str | None = None) -> PortfolioSyncResult:
        return await PollingFallback(self.processor).poll(actor or "poller")

    async def handle_webhook(
        self, payload: dict[str, Any], actor: str | None = None
    ) -> PortfolioSyncResult:
        return await self.processor.handle_webhook(payload, actor or "webhook")

    # ==================== Webhook management ====================

    async def setup_webhook(self, callback_url: str | None = None) -> Webhook:
        """
        Create (or reuse) and enable the portfolio webhook.

        Raises:
            ValidationError: If no callback URL is given or configured
        """
        url = callback_url or self.config.smartsheet.webhook_callback_url
        if not url:
            raise ValidationError("No webhook callback URL configured")
        sheet_id = self.config.smartsheet.portfolio_sheet_id

        for hook in await self.remote.list_webhooks():
            if hook.scope_object_id == sheet_id and hook.callback_url == url:
                if hook.enabled:
                    logger.info(f"Webhook {hook.id} already enabled")
                    return hook
                return await self.remote.enable_webhook(hook.id)

        hook = await self.remote.create_webhook(WEBHOOK_NAME, sheet_id, url)
        # Enabling triggers Smartsheet's verification challenge against the callback
        enabled = await self.remote.enable_webhook(hook.id)
        self.store.audit(
            self.config.app.default_actor, "webhook.created", "webhook", str(hook.id),
            callback_url=url,
        )
        return enabled

    async def list_webhooks(self) -> list[Webhook]:
        return await self.remote.list_webhooks()

    async def delete_webhook(self, webhook_id: int) -> None:
        await self.remote.delete_webhook(webhook_id)
        self.store.audit(
            self.config.app.default_actor, "webhook.deleted", "webhook", str(webhook_id)
        )

    # ==================== Diagnostics ====================

    async def verify_connection(self) -> dict[str, bool]:
        """
        Verify the Smartsheet token and the configured sheet and folders.

        Returns:
            Check name to success
        """
        smartsheet = self.config.smartsheet
        checks: dict[str, Callable[[], Awaitable[Any]]] = {
            "smartsheet_api": self.remote.get_current_user,
            "portfolio_sheet": lambda: self.remote.get_sheet(smartsheet.portfolio_sheet_id),
            "wbs_parent_folder": lambda: self.remote.get_folder(smartsheet.wbs_parent_folder_id),
            "template_folder": lambda: self.remote.get_folder(smartsheet.wbs_template_folder_id),
        }
        results = {name: False for name in checks}
        for name, check in checks.items():
            try:
                await check()
                results[name] = True
            except WbsError as e:
                logger.error(f"{name.replace('_', ' ')} check failed: {e}")
        return results

    def get_stats(self) -> StoreStats:
        return self.store.get_stats()
