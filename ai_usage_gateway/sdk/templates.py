"""
Prompt template catalog.

Looks a template up in storage first and falls back to the built-ins, so
a stored template with a built-in's name overrides it.
"""

from dataclasses import dataclass
from typing import List, Optional

from ..core.prompts import BUILTIN_TEMPLATES, DEFAULT_CATEGORY, PromptTemplate
from ..storage.repository import PromptTemplateRepository


@dataclass(frozen=True)
class TemplateSummary:
    """Listing entry for one template."""
    name: str
    description: Optional[str]
    category: str
    builtin: bool


class TemplateCatalog:
    """Stored templates layered over the built-in ones."""

    def __init__(self, repository: Optional[PromptTemplateRepository] = None):
        """Initialize the catalog.

        Args:
            repository: Template storage; without one only built-ins are served
        """
        self.repository = repository

    async def get_template(self, name: str) -> Optional[PromptTemplate]:
        if self.repository is not None:
            stored = await self.repository.get_active_template(name)
            if stored is not None:
                return stored
        return BUILTIN_TEMPLATES.get(name)

    async def list_templates(self, category: Optional[str] = None) -> List[TemplateSummary]:
        """Active stored templates, then built-ins not overridden in storage."""
        stored = []
        if self.repository is not None:
            stored = await self.repository.list_active_templates(category)
        summaries = [
            TemplateSummary(
                name=template.name,
                description=template.description,
                category=template.category,
                builtin=False
            )
            for template in stored
        ]

        if category is None or category == DEFAULT_CATEGORY:
            stored_names = {template.name for template in stored}
            summaries.extend(
                TemplateSummary(
                    name=name,
                    description=f"Built-in {name} template",
                    category=DEFAULT_CATEGORY,
                    builtin=True
                )
                for name in BUILTIN_TEMPLATES
                if name not in stored_names
            )
        return summaries

    async def save_template(self, template: PromptTemplate) -> int:
        """Store a template, overriding any built-in of the same name.

        Returns:
            The stored version

        Raises:
            RuntimeError: The catalog has no storage
        """
        if self.repository is None:
            raise RuntimeError("TemplateCatalog has no repository to save to")
        return await self.repository.save_template(template)
