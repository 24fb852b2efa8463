"""Policy context assembly for LLM prompts."""

from backend.app.models.policies import PolicyMatch
from backend.app.policies.search import SimilaritySearchEngine, group_by_policy

BLOCK_SEPARATOR = "\n\n---\n\n"
SNIPPET_CHARS = 200


def snippet(text: str, max_chars: int = SNIPPET_CHARS) -> str:
    """Display excerpt: first `max_chars` characters plus '...' when truncated."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


def format_policy_block(match: PolicyMatch) -> str:
    """One prompt block per policy: header lines then the matched chunk text."""
    return (
        f"Policy: {match.policy.title}\n"
        f"Category: {match.policy.category}\n"
        f"Relevance: {match.relevance:.2f}\n\n"
        f"{match.text}"
    )


def format_context(matches: list[PolicyMatch]) -> str:
    """Policy blocks joined by separators; "" for no matches."""
    return BLOCK_SEPARATOR.join(format_policy_block(match) for match in matches)


def filter_by_category(matches: list[PolicyMatch], category: str | None) -> list[PolicyMatch]:
    """Keep matches whose category name contains `category` (case-insensitive)."""
    if not category:
        return matches
    needle = category.lower()
    return [m for m in matches if needle in m.policy.category.lower()]


class PolicyContextAssembler:
    """Turns a question into ready-to-inject policy context."""

    def __init__(self, engine: SimilaritySearchEngine):
        self.engine = engine

    async def find_matches(
        self,
        question: str,
        tenant_id: str,
        *,
        category: str | None = None,
        limit: int = 3,
        similarity_threshold: float = 0.6,
    ) -> list[PolicyMatch]:
        """Search, group hits per policy and apply the category hint."""
        outcome = await self.engine.search(
            question,
            limit=limit,
            similarity_threshold=similarity_threshold,
            tenant_id=tenant_id,
        )
        return filter_by_category(group_by_policy(outcome.results), category)

    async def build_context(
        self,
        question: str,
        tenant_id: str,
        *,
        category: str | None = None,
        limit: int = 3,
        similarity_threshold: float = 0.6,
    ) -> str:
        """Formatted policy blocks joined by separators; "" when nothing matches."""
        matches = await self.find_matches(
            question,
            tenant_id,
            category=category,
            limit=limit,
            similarity_threshold=similarity_threshold,
        )
        return format_context(matches)
