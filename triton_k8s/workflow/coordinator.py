"""Provision coordinator: load → mutate → terraform → commit or discard.

State machine per operation::

    IDLE ─load─▶ LOADED ─mutate─▶ MUTATED ─terraform─▶ APPLYING ─┬─ok──▶ COMMITTED
                                                                 └─fail─▶ DISCARDED

The backend lock is held from before the load until after the commit, so
the whole sequence is atomic from the operator's point of view.  The only
durable write is :meth:`Backend.persist_state`, and it happens strictly
after Terraform reported success.  A failed Terraform run leaves the
backend exactly as it was.

Destroying individual modules runs ``terraform destroy -target=...``
against the *current* document (the module blocks carry the provider
configuration Terraform needs to tear them down) and then commits the
document with those modules removed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence

from triton_k8s.backend.base import Backend
from triton_k8s.backend.factory import backend_from_config
from triton_k8s.config.models import ProvisionConfig
from triton_k8s.errors import (
    ApplyFailure,
    NamingCollisionError,
    NotFoundError,
    PersistFailure,
)
from triton_k8s.state.document import Record, StateDocument
from triton_k8s.state.models import MANAGER_MODULE, NODE_KEY_PREFIX, node_key
from triton_k8s.state.naming import allocate_node_names
from triton_k8s.terraform.runner import TerraformResult, TerraformRunner

logger = logging.getLogger(__name__)

Mutation = Callable[[StateDocument], None]
NodeRecordFactory = Callable[[StateDocument, str], Record]


class Phase(str, Enum):
    """Position of the current operation in the state machine."""

    IDLE = "IDLE"
    LOADED = "LOADED"
    MUTATED = "MUTATED"
    APPLYING = "APPLYING"
    COMMITTED = "COMMITTED"
    DISCARDED = "DISCARDED"


@dataclass
class ProvisionResult:
    """Outcome of a committed operation."""

    target: str
    phase: Phase
    document: Optional[StateDocument] = None
    terraform: Optional[TerraformResult] = None
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    @property
    def committed(self) -> bool:
        return self.phase == Phase.COMMITTED


class ProvisionCoordinator:
    """Sequences backend, document, and Terraform into one operation."""

    def __init__(self, backend: Backend, runner: TerraformRunner) -> None:
        self.backend = backend
        self.runner = runner
        self.phase = Phase.IDLE

    @classmethod
    def from_config(cls, cfg: ProvisionConfig) -> "ProvisionCoordinator":
        runner = TerraformRunner(cfg.terraform_binary, stream_output=cfg.stream_output)
        return cls(backend_from_config(cfg), runner)

    # -- internal helpers -------------------------------------------------

    def _transition(self, target: str, phase: Phase) -> None:
        logger.debug("%s: %s -> %s", target, self.phase.value, phase.value)
        self.phase = phase

    def _load(self, target: str, *, create: bool) -> StateDocument:
        self._transition(target, Phase.IDLE)
        try:
            document = StateDocument.load(self.backend.load(target))
        except NotFoundError:
            if not create:
                raise
            logger.info("No state for '%s'; starting from an empty document", target)
            document = StateDocument.empty()
        self._transition(target, Phase.LOADED)
        return document

    def _check_terraform(self, target: str, result: TerraformResult) -> None:
        if result.success:
            return
        self._transition(target, Phase.DISCARDED)
        logger.error(
            "Terraform failed for '%s' (rc=%d); state left unchanged",
            target,
            result.returncode,
        )
        raise ApplyFailure(
            f"{result.command} exited with status {result.returncode}: "
            f"{result.stderr or '(no stderr)'}",
            result=result,
        )

    def _commit(self, target: str, data: bytes, owner: Optional[str]) -> None:
        try:
            self.backend.persist_state(target, data, owner=owner)
        except Exception as exc:
            logger.critical(
                "Terraform succeeded for '%s' but the state could not be "
                "persisted: %s. Manual reconciliation is required.",
                target,
                exc,
            )
            raise PersistFailure(target, data, exc) from exc
        self._transition(target, Phase.COMMITTED)

    # -- reads --------------------------------------------------------------

    def list_managers(self) -> List[str]:
        return self.backend.list_targets()

    def read(self, target: str) -> StateDocument:
        """Load the committed document without locking (read-only use)."""
        return StateDocument.load(self.backend.load(target))

    # -- generic operations -------------------------------------------------

    def apply(
        self,
        target: str,
        mutate: Mutation,
        *,
        create: bool = False,
    ) -> ProvisionResult:
        """Mutate the document for *target*, apply it, and commit on success.

        *create* allows a missing target to start from an empty document;
        otherwise a missing target raises :class:`NotFoundError`.
        Raises :class:`ApplyFailure` (nothing persisted) or
        :class:`PersistFailure` (applied but not persisted).
        """
        with self.backend.lock(target) as owner:
            document = self._load(target, create=create)
            before = set(document.module_names())

            try:
                mutate(document)
            except Exception:
                self._transition(target, Phase.DISCARDED)
                raise
            self._transition(target, Phase.MUTATED)
            data = document.to_bytes()

            self._transition(target, Phase.APPLYING)
            result = self.runner.apply(data)
            self._check_terraform(target, result)
            self._commit(target, data, owner)

        added = [name for name in document.module_names() if name not in before]
        logger.info("Committed '%s' (%d new module(s))", target, len(added))
        return ProvisionResult(
            target=target,
            phase=self.phase,
            document=document,
            terraform=result,
            added=added,
        )

    def destroy_modules(
        self,
        target: str,
        select: Callable[[StateDocument], Iterable[str]],
    ) -> ProvisionResult:
        """Destroy the modules chosen by *select* and commit their removal.

        *select* receives the loaded document and returns module names;
        each must exist (:class:`NotFoundError` otherwise).
        """
        with self.backend.lock(target) as owner:
            document = self._load(target, create=False)
            names = list(dict.fromkeys(select(document)))
            missing = [n for n in names if not document.has_module(n)]
            if missing:
                raise NotFoundError(
                    f"Module(s) not found in '{target}': {', '.join(missing)}"
                )
            if not names:
                logger.info("Nothing to destroy in '%s'", target)
                self._transition(target, Phase.IDLE)
                return ProvisionResult(target=target, phase=Phase.IDLE, document=document)

            applied = document.to_bytes()
            remaining = document.copy()
            for name in names:
                remaining.delete(name)
            self._transition(target, Phase.MUTATED)

            self._transition(target, Phase.APPLYING)
            result = self.runner.destroy(applied, targets=names)
            self._check_terraform(target, result)
            self._commit(target, remaining.to_bytes(), owner)

        logger.info("Destroyed %s in '%s'", ", ".join(names), target)
        return ProvisionResult(
            target=target,
            phase=self.phase,
            document=remaining,
            terraform=result,
            removed=names,
        )

    # -- managers -----------------------------------------------------------

    def create_manager(self, target: str, record: Record) -> ProvisionResult:
        """Provision (or re-provision) the cluster manager for *target*."""
        backend_block = self.backend.terraform_backend_config(target)

        def mutate(document: StateDocument) -> None:
            document.set_backend_config(backend_block)
            document.set_manager(record)

        return self.apply(target, mutate, create=True)

    def destroy_manager(self, target: str) -> ProvisionResult:
        """Destroy everything for *target* and delete its document."""
        with self.backend.lock(target) as owner:
            document = self._load(target, create=False)
            self._transition(target, Phase.MUTATED)

            applied = document.to_bytes()
            self._transition(target, Phase.APPLYING)
            result = self.runner.destroy(applied)
            self._check_terraform(target, result)

            try:
                self.backend.delete(target, owner=owner)
            except Exception as exc:
                logger.critical(
                    "Destroyed '%s' but its state could not be deleted: %s",
                    target,
                    exc,
                )
                raise PersistFailure(target, applied, exc) from exc
            self._transition(target, Phase.COMMITTED)

        logger.info("Cluster manager '%s' destroyed", target)
        return ProvisionResult(
            target=target,
            phase=self.phase,
            terraform=result,
            removed=document.module_names(),
        )

    # -- clusters -----------------------------------------------------------

    def add_cluster(
        self,
        target: str,
        provider: str,
        name: str,
        record: Record,
    ) -> ProvisionResult:
        """Add (or replace) ``cluster_<provider>_<name>`` under an existing manager."""

        def mutate(document: StateDocument) -> None:
            if not document.has_module(MANAGER_MODULE):
                raise NotFoundError(f"'{target}' has no {MANAGER_MODULE} module")
            document.set_cluster(provider, name, record)

        return self.apply(target, mutate)

    def destroy_cluster(self, target: str, cluster: str) -> ProvisionResult:
        """Destroy a cluster module together with all of its nodes."""

        def select(document: StateDocument) -> List[str]:
            if not document.has_module(cluster):
                raise NotFoundError(f"Cluster '{cluster}' not found in '{target}'")
            return [*document.nodes(cluster).values(), cluster]

        return self.destroy_modules(target, select)

    # -- nodes --------------------------------------------------------------

    def add_nodes(
        self,
        target: str,
        cluster: str,
        base_hostname: str,
        count: int,
        record_for: NodeRecordFactory,
        *,
        provider: str = "triton",
    ) -> ProvisionResult:
        """Add *count* nodes named from *base_hostname* to *cluster*.

        *record_for* builds each node's record from the loaded document and
        the allocated hostname, so it can reference the parent cluster's
        settings with :meth:`StateDocument.get`.  The allocated hostnames
        are returned in ``ProvisionResult.added``.
        """
        if count < 1:
            return ProvisionResult(target=target, phase=Phase.IDLE)

        hostnames: List[str] = []

        def mutate(document: StateDocument) -> None:
            if not document.has_module(cluster):
                raise NotFoundError(f"Cluster '{cluster}' not found in '{target}'")
            taken = set(document.nodes(cluster))
            taken.update(_provider_hostnames(document, provider))
            for hostname in allocate_node_names(taken, base_hostname, count):
                key = node_key(provider, hostname)
                if document.has_module(key):
                    raise NamingCollisionError(
                        f"Allocated node name '{hostname}' collides with module.{key}"
                    )
                document.set_node(provider, hostname, record_for(document, hostname))
                hostnames.append(hostname)

        result = self.apply(target, mutate)
        result.added = hostnames
        return result

    def destroy_nodes(
        self,
        target: str,
        cluster: str,
        hostnames: Sequence[str],
    ) -> ProvisionResult:
        """Destroy the named nodes of *cluster*."""

        def select(document: StateDocument) -> List[str]:
            nodes = document.nodes(cluster)
            unknown = [h for h in hostnames if h not in nodes]
            if unknown:
                raise NotFoundError(
                    f"Node(s) not found in cluster '{cluster}': {', '.join(unknown)}"
                )
            return [nodes[h] for h in hostnames]

        return self.destroy_modules(target, select)

    def destroy_node(self, target: str, cluster: str, hostname: str) -> ProvisionResult:
        return self.destroy_nodes(target, cluster, [hostname])


def _provider_hostnames(document: StateDocument, provider: str) -> List[str]:
    """Hostnames of every node module for *provider*, whatever its cluster."""
    prefix = f"{NODE_KEY_PREFIX}{provider}_"
    return [
        name[len(prefix):]
        for name in document.module_names()
        if name.startswith(prefix)
    ]
