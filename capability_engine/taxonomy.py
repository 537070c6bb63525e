from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .models import Application, Role, Technology


@dataclass
class TaxonomyGraph:
    """Read-mostly snapshot of the App -> Technology -> Role catalog, keyed by id."""

    apps: Dict[int, Application] = field(default_factory=dict)
    technologies: Dict[int, Technology] = field(default_factory=dict)
    roles: Dict[int, Role] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        apps: Iterable[Application],
        technologies: Iterable[Technology],
        roles: Iterable[Role],
    ) -> "TaxonomyGraph":
        graph = cls()
        for app in apps:
            graph.apps[app.id] = app
        for technology in technologies:
            graph.technologies[technology.id] = technology
        for role in roles:
            graph.roles[role.id] = role
        return graph

    def app(self, app_id: int) -> Optional[Application]:
        return self.apps.get(app_id)

    def technology(self, technology_id: int) -> Optional[Technology]:
        return self.technologies.get(technology_id)

    def role(self, role_id: int) -> Optional[Role]:
        return self.roles.get(role_id)

    def technologies_for_app(self, app_id: int) -> List[Technology]:
        """Technologies owned by ``app_id`` plus global ones."""
        return [
            tech
            for tech in sorted(self.technologies.values(), key=lambda t: t.id)
            if tech.app_id is None or tech.app_id == app_id
        ]

    def roles_for(
        self, app_id: Optional[int] = None, technology_id: Optional[int] = None
    ) -> List[Role]:
        """Roles selectable for a partially chosen triple.

        Fully global roles (no app, no technology) are always included.
        """
        selected: List[Role] = []
        for role in sorted(self.roles.values(), key=lambda r: r.id):
            is_global = role.app_id is None and role.technology_id is None
            if is_global:
                selected.append(role)
            elif app_id is not None and technology_id is not None:
                if role.app_id == app_id and role.technology_id in (technology_id, None):
                    selected.append(role)
            elif app_id is not None:
                if role.app_id == app_id:
                    selected.append(role)
            elif technology_id is not None:
                if role.technology_id == technology_id:
                    selected.append(role)
            else:
                selected.append(role)
        return selected

    def effective_app_id(self, role: Role) -> Optional[int]:
        """A role scoped to a technology inherits that technology's application."""
        if role.app_id is not None:
            return role.app_id
        if role.technology_id is None:
            return None
        technology = self.technologies.get(role.technology_id)
        return technology.app_id if technology else None


def technology_in_scope(technology: Technology, app_id: int) -> bool:
    return technology.app_id is None or technology.app_id == app_id


def role_in_app_scope(role: Role, app_id: int) -> bool:
    return role.app_id is None or role.app_id == app_id


def role_in_technology_scope(role: Role, technology_id: int) -> bool:
    return role.technology_id is None or role.technology_id == technology_id
