from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class Phase(str, Enum):
    WAITING = "Waiting for Players"
    READY = "Ready to Start"
    DEALING_PENDING = "Dealing Pending"
    BIDDING = "Bidding Phase"
    FROG_UPGRADE = "Awaiting Frog Upgrade Decision"
    ALL_PASS = "AllPassWidowReveal"
    FROG_EXCHANGE = "Frog Widow Exchange"
    TRUMP_SELECTION = "Trump Selection"
    PLAYING = "Playing Phase"
    TRICK_LINGER = "TrickCompleteLinger"
    AWAITING_NEXT_ROUND = "Awaiting Next Round Trigger"
    GAME_OVER = "Game Over"


PRE_GAME_PHASES = (Phase.WAITING, Phase.READY)
SAFE_LEAVE_PHASES = (Phase.WAITING, Phase.READY, Phase.GAME_OVER)


class TransactionType(str, Enum):
    BUY_IN = "buy_in"
    WIN_PAYOUT = "win_payout"
    FORFEIT_LOSS = "forfeit_loss"
    FORFEIT_PAYOUT = "forfeit_payout"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    WASH_PAYOUT = "wash_payout"


class Seat(BaseModel):
    user_id: int = Field(alias="userId")
    player_name: str = Field(alias="playerName")
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    is_spectator: bool = Field(default=False, alias="isSpectator")
    disconnected: bool = False

    model_config = ConfigDict(populate_by_name=True)


# ---------- commands ----------
class _Command(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class JoinCommand(_Command):
    type: Literal["join"]
    player_name: str = Field(alias="playerName", min_length=1, max_length=50)


class LeaveCommand(_Command):
    type: Literal["leave"]


class StartGameCommand(_Command):
    type: Literal["startGame"]


class DealCommand(_Command):
    type: Literal["dealCards"]


class BidCommand(_Command):
    type: Literal["placeBid"]
    bid: str


class ChooseTrumpCommand(_Command):
    type: Literal["chooseTrump"]
    suit: str


class SubmitDiscardsCommand(_Command):
    type: Literal["submitFrogDiscards"]
    discards: List[str]


class PlayCardCommand(_Command):
    type: Literal["playCard"]
    card: str


class NextRoundCommand(_Command):
    type: Literal["requestNextRound"]


class StartForfeitTimerCommand(_Command):
    type: Literal["startTimeoutClock"]
    target_player_name: str = Field(alias="targetPlayerName")


class ForfeitCommand(_Command):
    type: Literal["forfeitGame"]


class RequestDrawCommand(_Command):
    type: Literal["requestDraw"]


class DrawVoteCommand(_Command):
    type: Literal["submitDrawVote"]
    vote: Literal["wash", "split", "no"]


class InsuranceCommand(_Command):
    type: Literal["updateInsuranceSetting"]
    setting: Literal["bidderRequirement", "defenderOffer"]
    value: int


class ResetCommand(_Command):
    type: Literal["resetGame"]


Command = Annotated[
    Union[
        JoinCommand,
        LeaveCommand,
        StartGameCommand,
        DealCommand,
        BidCommand,
        ChooseTrumpCommand,
        SubmitDiscardsCommand,
        PlayCardCommand,
        NextRoundCommand,
        StartForfeitTimerCommand,
        ForfeitCommand,
        RequestDrawCommand,
        DrawVoteCommand,
        InsuranceCommand,
        ResetCommand,
    ],
    Field(discriminator="type"),
]

COMMAND_ADAPTER: TypeAdapter[Command] = TypeAdapter(Command)


# ---------- client projection ----------
class _View(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class BidView(_View):
    player_name: str = Field(alias="playerName")
    bid: str


class TrickCardView(_View):
    player_name: str = Field(alias="playerName")
    card: str


class CompletedTrickView(_View):
    cards: List[TrickCardView]
    winner_name: str = Field(alias="winnerName")


class InsuranceAgreementView(_View):
    bidder_player_name: str = Field(alias="bidderPlayerName")
    bidder_requirement: int = Field(alias="bidderRequirement")
    defender_offers: Dict[str, int] = Field(alias="defenderOffers")


class InsuranceView(_View):
    is_active: bool = Field(alias="isActive")
    bid_multiplier: Optional[int] = Field(default=None, alias="bidMultiplier")
    bidder_player_name: Optional[str] = Field(default=None, alias="bidderPlayerName")
    bidder_requirement: int = Field(default=0, alias="bidderRequirement")
    defender_offers: Dict[str, int] = Field(default_factory=dict, alias="defenderOffers")
    deal_executed: bool = Field(default=False, alias="dealExecuted")
    executed_agreement: Optional[InsuranceAgreementView] = Field(default=None, alias="executedAgreement")


class HindsightView(_View):
    actual_points: int = Field(alias="actualPoints")
    actual_reason: str = Field(alias="actualReason")
    potential_points: int = Field(alias="potentialPoints")
    potential_reason: str = Field(alias="potentialReason")
    hindsight_value: int = Field(alias="hindsightValue")


class DrawRequestView(_View):
    is_active: bool = Field(alias="isActive")
    initiator: Optional[str] = None
    votes: Dict[str, Optional[str]] = Field(default_factory=dict)
    timer: Optional[int] = None


class ForfeitureView(_View):
    target_player_name: Optional[str] = Field(default=None, alias="targetPlayerName")
    time_left: Optional[int] = Field(default=None, alias="timeLeft")


class RoundSummary(_View):
    message: str
    is_game_over: bool = Field(alias="isGameOver")
    final_scores: Dict[str, int] = Field(default_factory=dict, alias="finalScores")
    bid_winner_name: Optional[str] = Field(default=None, alias="bidWinnerName")
    bidder_card_points: Optional[int] = Field(default=None, alias="bidderCardPoints")
    defender_card_points: Optional[int] = Field(default=None, alias="defenderCardPoints")
    game_winner: Optional[str] = Field(default=None, alias="gameWinner")
    dealer_of_round_id: Optional[int] = Field(default=None, alias="dealerOfRoundId")
    widow_for_reveal: List[str] = Field(default_factory=list, alias="widowForReveal")
    insurance_deal_was_made: bool = Field(default=False, alias="insuranceDealWasMade")
    insurance_details: Optional[InsuranceAgreementView] = Field(default=None, alias="insuranceDetails")
    insurance_hindsight: Optional[Dict[str, HindsightView]] = Field(default=None, alias="insuranceHindsight")
    all_tricks: Dict[str, List[List[str]]] = Field(default_factory=dict, alias="allTricks")
    payouts: Dict[str, Decimal] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class TableState(_View):
    table_id: str = Field(alias="tableId")
    table_name: str = Field(alias="tableName")
    theme: str
    state: Phase
    players: List[Seat]
    player_order_active: List[str] = Field(alias="playerOrderActive")
    player_mode: Optional[int] = Field(default=None, alias="playerMode")
    dealer: Optional[int] = None
    game_started: bool = Field(alias="gameStarted")
    scores: Dict[str, int] = Field(default_factory=dict)
    player_tokens: Dict[str, Decimal] = Field(default_factory=dict, alias="playerTokens")
    hand: Optional[List[str]] = None
    hand_counts: Dict[str, int] = Field(default_factory=dict, alias="handCounts")
    widow: List[str] = Field(default_factory=list)
    widow_count: int = Field(default=0, alias="widowCount")
    revealed_widow_for_frog: List[str] = Field(default_factory=list, alias="revealedWidowForFrog")
    widow_discards_for_frog_bidder: List[str] = Field(default_factory=list, alias="widowDiscardsForFrogBidder")
    current_highest_bid_details: Optional[BidView] = Field(default=None, alias="currentHighestBidDetails")
    bidding_turn_player_name: Optional[str] = Field(default=None, alias="biddingTurnPlayerName")
    players_who_passed_this_round: List[str] = Field(default_factory=list, alias="playersWhoPassedThisRound")
    original_frog_bidder: Optional[str] = Field(default=None, alias="originalFrogBidder")
    solo_bid_made_after_frog: bool = Field(default=False, alias="soloBidMadeAfterFrog")
    bid_winner_info: Optional[BidView] = Field(default=None, alias="bidWinnerInfo")
    trump_suit: Optional[str] = Field(default=None, alias="trumpSuit")
    trump_broken: bool = Field(default=False, alias="trumpBroken")
    current_trick_cards: List[TrickCardView] = Field(default_factory=list, alias="currentTrickCards")
    lead_suit_current_trick: Optional[str] = Field(default=None, alias="leadSuitCurrentTrick")
    trick_turn_player_name: Optional[str] = Field(default=None, alias="trickTurnPlayerName")
    trick_leader_name: Optional[str] = Field(default=None, alias="trickLeaderName")
    tricks_played_count: int = Field(default=0, alias="tricksPlayedCount")
    captured_trick_counts: Dict[str, int] = Field(default_factory=dict, alias="capturedTrickCounts")
    last_completed_trick: Optional[CompletedTrickView] = Field(default=None, alias="lastCompletedTrick")
    legal_moves: List[str] = Field(default_factory=list, alias="legalMoves")
    insurance: InsuranceView
    forfeiture: ForfeitureView
    draw_request: DrawRequestView = Field(alias="drawRequest")
    round_summary: Optional[RoundSummary] = Field(default=None, alias="roundSummary")
