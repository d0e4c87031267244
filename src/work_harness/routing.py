"""Label-based dispatch of work items to target repositories."""

from pathlib import Path
from typing import Optional

from .config import HarnessConfig, RepositoryConfig
from .models import WorkItem, WorkSpec


class RepositoryRouter:
    """Routes items to repositories through a fixed label table.

    The first label with a route wins; unrouted items go to the default
    repository. Repository order is the configuration order.
    """

    def __init__(self, config: HarnessConfig, project_path: Path | str = "."):
        self.config = config
        self.project_path = Path(project_path)

        if config.default_repository not in config.repositories:
            raise ValueError(
                f"Default repository '{config.default_repository}' is not configured"
            )
        for label, repo in config.label_routes.items():
            if repo not in config.repositories:
                raise ValueError(f"Label '{label}' routes to unknown repository '{repo}'")

    @property
    def repository_names(self) -> list[str]:
        return list(self.config.repositories)

    def repository(self, name: str) -> RepositoryConfig:
        return self.config.repositories[name]

    def path_for(self, name: str) -> Path:
        """Absolute working directory of a repository."""
        return (self.project_path / self.config.repositories[name].path).resolve()

    def repositories_for(self, item: WorkItem) -> list[str]:
        """All repositories the item's labels route to, in configuration order."""
        routed = {self.config.label_routes[l] for l in item.labels if l in self.config.label_routes}
        return [name for name in self.repository_names if name in routed]

    def route(self, item: WorkItem) -> str:
        """Return the owning repository of an item."""
        if item.repository:
            return item.repository
        for label in item.labels:
            repo = self.config.label_routes.get(label)
            if repo:
                return repo
        return self.config.default_repository

    def assign(self, item: WorkItem) -> str:
        item.repository = self.route(item)
        return item.repository

    def fan_out(self, spec: WorkSpec) -> WorkSpec:
        """Split compound features that span repositories into sibling items.

        A feature routed to repositories r1, r2 (configuration order) becomes
        "<id>--r1" and "<id>--r2", the second depending on the first. Items
        that depended on the compound feature depend on every sibling.
        Every resulting item has its repository assigned.
        """
        siblings: dict[str, list[str]] = {}
        items: list[WorkItem] = []

        for item in spec.items:
            repos = self.repositories_for(item)
            if len(repos) <= 1:
                self.assign(item)
                items.append(item)
                continue

            previous: Optional[str] = None
            siblings[item.id] = []
            for repo in repos:
                sibling = item.model_copy(deep=True)
                sibling.id = f"{item.id}--{repo}"
                sibling.title = f"{item.title} ({repo})"
                sibling.repository = repo
                if previous:
                    sibling.depends_on.append(previous)
                siblings[item.id].append(sibling.id)
                items.append(sibling)
                previous = sibling.id

        if siblings:
            for item in items:
                rewritten: list[str] = []
                for dep in item.depends_on:
                    for dep_id in siblings.get(dep, [dep]):
                        if dep_id not in rewritten:
                            rewritten.append(dep_id)
                item.depends_on = rewritten

        for order, item in enumerate(items):
            item.order = order

        return spec.model_copy(update={"items": items})
