"""Response models returned to the surrounding application"""
from typing import Optional
from pydantic import BaseModel, Field

class ClaimResult(BaseModel):
    """
    Outcome of a successful claim.

    Attributes:
        raid_id: Raid the reward belongs to
        participant_id: Claiming participant
        reward_amount: Amount handed to the settlement program
        token_mint: Token the reward is denominated in
        settlement_reference: Reference returned by the settlement program
        settlement_status: 'settled' once funds moved
    """
    raid_id: int
    participant_id: str
    reward_amount: float
    token_mint: str = 'SOL'
    settlement_reference: Optional[str] = None
    settlement_status: str = 'settled'

class ProgressResponse(BaseModel):
    """Listening progress for one participant in one raid"""
    raid_id: int
    participant_id: str
    total_listen_duration: int = Field(description="Whole seconds of the current continuous stretch")
    required_listen_seconds: int
    qualified: bool = False
    claimed: bool = False
    is_listening: bool = False
    tracking: bool = Field(False, description="A live tracking session exists")
    settlement_status: str = 'none'
