"""Source stage action: fetches a repository snapshot."""

from __future__ import annotations

import logging

from deployline.collaborators.protocols import SourceProvider
from deployline.core.action_runner import ActionContext

logger = logging.getLogger(__name__)


class SourceFetchAction:
    """Fetch the head of ``branch`` in ``repo`` as the *output* artifact."""

    def __init__(
        self,
        provider: SourceProvider,
        repo: str,
        branch: str = "main",
        *,
        output: str = "source",
    ) -> None:
        self.provider = provider
        self.repo = repo
        self.branch = branch
        self.output = output

    def execute(self, context: ActionContext) -> dict[str, bytes]:
        revision = self.provider.fetch(self.repo, self.branch)
        logger.info(
            "Fetched %s@%s at commit %s (%d bytes)",
            self.repo, self.branch, revision.commit_id, len(revision.archive),
        )
        return {self.output: revision.archive}
