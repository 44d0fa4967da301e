from __future__ import annotations

import hashlib
import hmac
import secrets
import uuid
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Tuple

from projectauth.config import Settings
from projectauth.logging import get_correlation_id, get_logger
from projectauth.service.errors import AuthenticationError, NotFoundError, ValidationError
from projectauth.storage.common import ProjectConfig
from projectauth.storage.models import (
    CustomFieldSpec,
    EmailTemplateOverride,
    Operation,
    Project,
    ProjectSettings,
    RateLimitRule,
)

logger = get_logger(__name__)

API_KEY_PREFIX = "ak_"
ROLES = frozenset({"user", "admin"})


def generate_api_key() -> str:
    """New project API key: ``ak_`` followed by 64 hex chars (256 bits)."""
    return f"{API_KEY_PREFIX}{secrets.token_hex(32)}"


def hash_api_key(raw_key: str, pepper: str) -> str:
    """HMAC-SHA256 digest used to look a project up without storing its key."""
    return hmac.new(pepper.encode(), raw_key.encode(), hashlib.sha256).hexdigest()


@dataclass
class RequestContext:
    """Per-call state handed to every coordinator operation."""

    project: Project
    role: str = "user"
    user_id: Optional[str] = None
    timeout: Optional[float] = None
    correlation_id: Optional[str] = field(default_factory=get_correlation_id)

    @property
    def project_id(self) -> str:
        return self.project.id

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class ProjectService:
    def __init__(self, settings: Settings, store: ProjectConfig) -> None:
        self.settings = settings
        self.store = store
        self.logger = logger

    def _digest(self, raw_key: str) -> str:
        return hash_api_key(raw_key, self.settings.effective_api_key_pepper)

    def create_project(
        self,
        name: str,
        *,
        settings: Optional[ProjectSettings] = None,
        rate_limits: Optional[Dict[str, RateLimitRule]] = None,
        custom_fields: Optional[Iterable[CustomFieldSpec]] = None,
        email_templates: Optional[Dict[str, EmailTemplateOverride]] = None,
    ) -> Tuple[Project, str]:
        """Register a project and return it with its plaintext API key.

        The key is only available here; the store keeps its digest.
        """
        name = (name or "").strip()
        if not name or len(name) > 100:
            raise ValidationError("project name must be 1-100 characters")
        rate_limits = dict(rate_limits or {})
        unknown_ops = sorted(set(rate_limits) - {op.value for op in Operation})
        if unknown_ops:
            raise ValidationError(
                "unknown rate limit operations", detail={"operations": unknown_ops}
            )
        raw_key = generate_api_key()
        project = Project(
            id=str(uuid.uuid4()),
            name=name,
            api_key_hash=self._digest(raw_key),
            api_key_prefix=raw_key[:10],
            settings=settings or ProjectSettings(),
            rate_limits=rate_limits,
            custom_fields=list(custom_fields or []),
            email_templates=dict(email_templates or {}),
        )
        saved = self.store.save_project(project)
        self.logger.info(
            "project_created", project_id=saved.id, api_key_prefix=saved.api_key_prefix
        )
        return saved, raw_key

    def rotate_api_key(self, project_id: str) -> Tuple[Project, str]:
        project = self.get(project_id)
        raw_key = generate_api_key()
        project.api_key_hash = self._digest(raw_key)
        project.api_key_prefix = raw_key[:10]
        saved = self.store.save_project(project)
        self.logger.info(
            "project_api_key_rotated", project_id=saved.id, api_key_prefix=saved.api_key_prefix
        )
        return saved, raw_key

    def get(self, project_id: str) -> Project:
        project = self.store.get(project_id)
        if not project:
            raise NotFoundError("project not found")
        return project

    def resolve(self, api_key: Optional[str]) -> Project:
        """Find the active project owning ``api_key``."""
        if not api_key:
            raise AuthenticationError("API key is required")
        project = self.store.get_by_api_key_hash(self._digest(api_key.strip()))
        if not project or not project.is_active:
            self.logger.warning("project_api_key_rejected", api_key_prefix=api_key[:10])
            raise AuthenticationError("invalid API key")
        return project
