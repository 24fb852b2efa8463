"""QA endpoint - POST /qa/policy answers an employee question from stored policies."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from backend.app.api.auth import get_current_context
from backend.app.api.deps import get_completion_client, get_context_assembler
from backend.app.config import Settings, get_settings
from backend.app.db.context import RequestContext
from backend.app.llm.client import CompletionClient, build_policy_prompt
from backend.app.models.policies import PolicyRef
from backend.app.policies.context import PolicyContextAssembler, format_context, snippet
from backend.app.policies.errors import PolicyRagError

router = APIRouter(prefix="/qa", tags=["qa"])
logger = logging.getLogger(__name__)


class PolicyQuestion(BaseModel):
    """Request body for POST /qa/policy."""

    question: str = Field(..., min_length=1, max_length=2000)
    category: str | None = Field(None, description="Optional category name hint")


class PolicySource(BaseModel):
    """Policy that contributed context to an answer."""

    policy: PolicyRef
    relevance: float
    excerpt: str = Field(..., description="Start of the matched policy text")


class PolicyAnswer(BaseModel):
    """Response for POST /qa/policy."""

    answer: str
    sources: list[PolicySource]


@router.post("/policy", response_model=PolicyAnswer, status_code=status.HTTP_200_OK)
async def answer_policy_question(
    request: PolicyQuestion,
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    assembler: Annotated[PolicyContextAssembler, Depends(get_context_assembler)],
    client: Annotated[CompletionClient, Depends(get_completion_client)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> PolicyAnswer:
    """Answer a question grounded in the tenant's active policies.

    Retrieves matching chunks, formats one block per policy, and passes the
    assembled context to the completion client.

    Raises:
        HTTPException: 500 if retrieval fails
    """
    logger.info(f"[POST /qa/policy] tenant_id={ctx.tenant_id}, category={request.category}")

    try:
        matches = await assembler.find_matches(
            request.question,
            ctx.tenant_id,
            category=request.category,
            limit=settings.context_limit,
            similarity_threshold=settings.context_similarity_threshold,
        )
    except PolicyRagError as e:
        logger.error(f"[POST /qa/policy] retrieval failed: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="internal error",
        ) from e

    context = format_context(matches)
    answer = await client.complete(build_policy_prompt(request.question, context))

    logger.info(f"[POST /qa/policy] answered with {len(matches)} policies in context")

    return PolicyAnswer(
        answer=answer,
        sources=[
            PolicySource(policy=m.policy, relevance=m.relevance, excerpt=snippet(m.text))
            for m in matches
        ],
    )
