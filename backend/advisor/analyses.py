"""
Gap Advisor Backend — Analysis Provider

Typed access to the analyses produced by the gap-analysis pipeline.
The conversation engine reads them and, for variants, requests new ones.
"""

from advisor import db
from advisor.conversations import Forbidden, NotFound
from advisor.models import Analysis


async def get_analysis(analysis_id: str) -> Analysis:
    """Load an analysis. Raises NotFound."""
    row = await db.get_analysis(analysis_id)
    if row is None:
        raise NotFound(f"Analysis {analysis_id} not found")
    return Analysis.model_validate({**row, "id": str(row["id"])})


async def get_owned_analysis(analysis_id: str, user_id: str) -> Analysis:
    """Load an analysis the user may talk about. Raises NotFound or Forbidden."""
    analysis = await get_analysis(analysis_id)
    if analysis.user_id is not None and analysis.user_id != user_id:
        raise Forbidden(f"Analysis {analysis_id} belongs to another user")
    return analysis


async def create_variant(base: Analysis, modified_parameters: dict[str, str], query: str) -> Analysis:
    """
    Ask the pipeline for a new analysis: base parameters overlaid with
    `modified_parameters`, linked back through parent_analysis_id.
    """
    row = await db.create_variant_analysis(base.model_dump(mode="json"), modified_parameters, query)
    return Analysis.model_validate({**row, "id": str(row["id"])})
