from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from bidding import Auction, Bid, FROG, HEART_SOLO, SOLO
from cards import (
    HAND_SIZE,
    HEARTS,
    TRICKS_PER_ROUND,
    TrickPlay,
    determine_trick_winner,
    get_suit,
    illegal_play_reason,
    legal_moves,
    shuffled_deck,
)
from errors import IllegalAction, InsufficientFundsError, InvariantViolation
from ledger import LedgerGateway, Posting, StatChange
from models import (
    BidCommand,
    BidView,
    ChooseTrumpCommand,
    CompletedTrickView,
    DealCommand,
    DrawRequestView,
    DrawVoteCommand,
    ForfeitCommand,
    ForfeitureView,
    HindsightView,
    InsuranceAgreementView,
    InsuranceCommand,
    InsuranceView,
    JoinCommand,
    LeaveCommand,
    NextRoundCommand,
    Phase,
    PlayCardCommand,
    PRE_GAME_PHASES,
    RequestDrawCommand,
    ResetCommand,
    RoundSummary,
    SAFE_LEAVE_PHASES,
    Seat,
    StartForfeitTimerCommand,
    StartGameCommand,
    SubmitDiscardsCommand,
    TableState,
    TransactionType,
    TrickCardView,
)
from scoring import (
    PLACEHOLDER_ID,
    calculate_draw_split_payout,
    calculate_forfeit_payout,
    is_game_over,
    score_round,
    settle_game_over,
)
from side_deals import DrawRequest, Forfeiture, Insurance, InsuranceAgreement, defenders_of, tally_draw

logger = logging.getLogger(__name__)

MIN_PLAYERS = 3
MAX_PLAYERS = 4
TRUMP_CHOICES = ("S", "C", "D")
FROG_DISCARD_COUNT = 3


@dataclass(frozen=True)
class Timings:
    forfeit_seconds: int = 120
    draw_vote_seconds: int = 30
    tick_interval: float = 1.0
    trick_linger_seconds: float = 1.0
    all_pass_reveal_seconds: float = 3.0
    draw_reset_seconds: float = 10.0

    @classmethod
    def from_settings(cls, settings) -> "Timings":
        return cls(
            forfeit_seconds=settings.forfeit_seconds,
            draw_vote_seconds=settings.draw_vote_seconds,
            tick_interval=settings.tick_interval,
            trick_linger_seconds=settings.trick_linger_seconds,
            all_pass_reveal_seconds=settings.all_pass_reveal_seconds,
            draw_reset_seconds=settings.draw_reset_seconds,
        )


class TableListener(Protocol):
    async def table_updated(self, table: "Table") -> None: ...

    async def table_event(self, table: "Table", message: dict, user_id: Optional[int] = None) -> None: ...


class NullListener:
    async def table_updated(self, table: "Table") -> None:
        return None

    async def table_event(self, table: "Table", message: dict, user_id: Optional[int] = None) -> None:
        return None


def _agreement_view(agreement: Optional[InsuranceAgreement]) -> Optional[InsuranceAgreementView]:
    if agreement is None:
        return None
    return InsuranceAgreementView(
        bidderPlayerName=agreement.bidder_player_name,
        bidderRequirement=agreement.bidder_requirement,
        defenderOffers=dict(agreement.defender_offers),
    )


def _bid_view(bid: Optional[Bid]) -> Optional[BidView]:
    return BidView(playerName=bid.player_name, bid=bid.bid) if bid else None


class Table:
    """One physical table. The only writer of its own state.

    Every public coroutine and every timer callback runs under ``self._lock``,
    so mutations never interleave and ledger awaits hold back later actions.
    """

    def __init__(
        self,
        table_id: str,
        table_name: str,
        *,
        ledger: LedgerGateway,
        listener: Optional[TableListener] = None,
        theme: str = "default",
        buy_in: Decimal = Decimal("1.00"),
        starting_score: int = 120,
        timings: Optional[Timings] = None,
        rng: Optional[random.Random] = None,
    ):
        self.table_id = table_id
        self.table_name = table_name
        self.theme = theme
        self.ledger = ledger
        self.listener: TableListener = listener or NullListener()
        self.buy_in = Decimal(buy_in)
        self.starting_score = starting_score
        self.timings = timings or Timings()
        self.rng = rng or random.Random()

        self._lock = asyncio.Lock()
        self._timers: Dict[str, asyncio.Task] = {}

        self.seats: List[Seat] = []
        self.player_tokens: Dict[str, Decimal] = {}
        self._reset_game_fields()

    # ------------------------------------------------------------------
    # State shape
    # ------------------------------------------------------------------
    def _reset_game_fields(self) -> None:
        self.phase = Phase.WAITING
        self.game_started = False
        self.game_id: Optional[int] = None
        self.participants: List[int] = []
        self.player_mode: Optional[int] = None
        self.dealer: Optional[int] = None
        self.scores: Dict[str, int] = {}
        self.active_order: List[str] = []
        self.forfeiture = Forfeiture()
        self.draw_request = DrawRequest()
        self._init_round()

    def _init_round(self) -> None:
        self.active_order = self._compute_active_order()
        self.hands: Dict[str, List[str]] = {name: [] for name in self.active_order}
        self.widow: List[str] = []
        self.original_widow: List[str] = []
        self.revealed_widow_for_frog: List[str] = []
        self.frog_discards: List[str] = []
        self.auction: Optional[Auction] = None
        self.bid_winner: Optional[Bid] = None
        self.trump_suit: Optional[str] = None
        self.trump_broken = False
        self.current_trick: List[TrickPlay] = []
        self.lead_suit: Optional[str] = None
        self.trick_turn: Optional[str] = None
        self.trick_leader: Optional[str] = None
        self.tricks_played = 0
        self.captured_tricks: Dict[str, List[List[str]]] = {name: [] for name in self.active_order}
        self.last_completed_trick: Optional[Tuple[List[TrickPlay], str]] = None
        self.insurance = Insurance()
        self.round_summary: Optional[RoundSummary] = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _seat(self, user_id: Optional[int]) -> Optional[Seat]:
        return next((s for s in self.seats if s.user_id == user_id), None)

    def _seat_by_name(self, name: Optional[str]) -> Optional[Seat]:
        return next((s for s in self.seats if s.player_name == name), None)

    def _require_seat(self, user_id: int) -> Seat:
        seat = self._seat(user_id)
        if seat is None:
            raise IllegalAction("You are not seated at this table")
        return seat

    def _require_player(self, user_id: int) -> Seat:
        seat = self._require_seat(user_id)
        if seat.is_spectator:
            raise IllegalAction("Spectators cannot do that")
        return seat

    def _require_phase(self, *phases: Phase) -> None:
        if self.phase not in phases:
            raise IllegalAction(f"Not allowed during {self.phase.value}")

    def _players(self) -> List[Seat]:
        return [s for s in self.seats if not s.is_spectator]

    def _connected_players(self) -> List[Seat]:
        return [s for s in self._players() if not s.disconnected]

    def _participant_seats(self) -> List[Seat]:
        seats = (self._seat(uid) for uid in self.participants)
        return [s for s in seats if s is not None]

    def _name_of(self, user_id: Optional[int]) -> Optional[str]:
        seat = self._seat(user_id)
        return seat.player_name if seat else None

    def _compute_active_order(self) -> List[str]:
        """Players after the dealer, dealer last; a 4-player table sits the dealer out."""
        if not self.game_started or self.dealer not in self.participants:
            return []
        idx = self.participants.index(self.dealer)
        n = len(self.participants)
        rotation = [self._name_of(self.participants[(idx + i) % n]) for i in range(1, n + 1)]
        if any(name is None for name in rotation):
            raise InvariantViolation("A participant lost their seat")
        if self.player_mode == MAX_PLAYERS:
            rotation = rotation[:-1]
        return rotation

    def _sitting_out(self) -> Optional[str]:
        if self.player_mode == MAX_PLAYERS:
            return self._name_of(self.dealer)
        return None

    def _refresh_lobby_phase(self) -> None:
        if self.game_started:
            return
        for seat in self.seats:
            if seat.is_spectator and len(self._players()) < MAX_PLAYERS:
                seat.is_spectator = False
        self.phase = Phase.READY if len(self._connected_players()) >= MIN_PLAYERS else Phase.WAITING

    def _remove_seat(self, seat: Seat) -> None:
        self.seats = [s for s in self.seats if s.user_id != seat.user_id]

    async def _emit_update(self) -> None:
        await self.listener.table_updated(self)

    async def _notify(self, message: str) -> None:
        await self.listener.table_event(self, {"type": "notification", "message": message})

    async def _sync_player_tokens(self) -> None:
        ids = [s.user_id for s in self.seats]
        if not ids:
            self.player_tokens = {}
            return
        try:
            balances = await self.ledger.get_balances(ids)
        except Exception:
            logger.exception("[%s] Error fetching tokens during sync", self.table_id)
            return
        self.player_tokens = {s.player_name: balances.get(s.user_id, Decimal("0.00")) for s in self.seats}

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------
    def _schedule(self, name: str, delay: float, action: Callable[[], Awaitable[None]]) -> None:
        self._cancel_timer(name)
        self._timers[name] = asyncio.create_task(self._run_timer(name, delay, action))

    def _schedule_countdown(
        self, name: str, tick: Callable[[], int], on_expire: Callable[[], Awaitable[None]]
    ) -> None:
        self._cancel_timer(name)
        self._timers[name] = asyncio.create_task(self._run_countdown(name, tick, on_expire))

    async def _run_timer(self, name: str, delay: float, action: Callable[[], Awaitable[None]]) -> None:
        await asyncio.sleep(delay)
        async with self._lock:
            if self._timers.get(name) is not asyncio.current_task():
                return
            self._timers.pop(name, None)
            try:
                await action()
            except Exception:
                logger.exception("[%s] Timer %s failed", self.table_id, name)

    async def _run_countdown(
        self, name: str, tick: Callable[[], int], on_expire: Callable[[], Awaitable[None]]
    ) -> None:
        while True:
            await asyncio.sleep(self.timings.tick_interval)
            async with self._lock:
                if self._timers.get(name) is not asyncio.current_task():
                    return
                try:
                    if tick() > 0:
                        await self._emit_update()
                        continue
                    self._timers.pop(name, None)
                    await on_expire()
                except Exception:
                    logger.exception("[%s] Countdown %s failed", self.table_id, name)
                return

    def _cancel_timer(self, name: str) -> None:
        task = self._timers.pop(name, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _cancel_all_timers(self) -> None:
        for name in list(self._timers):
            self._cancel_timer(name)

    def _clear_forfeit_timer(self) -> None:
        self._cancel_timer("forfeit")
        self.forfeiture = Forfeiture()

    # ------------------------------------------------------------------
    # Seats & connections
    # ------------------------------------------------------------------
    async def join(self, user_id: int, player_name: str, session_id: Optional[str] = None) -> Seat:
        async with self._lock:
            seat = self._seat(user_id)
            if seat is not None:
                seat.session_id = session_id or seat.session_id
                if seat.disconnected:
                    self._mark_reconnected(seat)
                await self._emit_update()
                return seat
            if self.game_started:
                raise IllegalAction("Game has already started.")
            if self._seat_by_name(player_name) is not None:
                raise IllegalAction("That name is already taken at this table.")
            try:
                balance = await self.ledger.get_balance(user_id)
            except Exception as exc:
                logger.exception("[%s] Balance lookup failed for user %s", self.table_id, user_id)
                raise IllegalAction("A server error occurred trying to join the table.") from exc
            if balance < self.buy_in:
                raise IllegalAction(f"You need {self.buy_in} tokens to join. You have {balance:.2f}.")
            seat = Seat(
                user_id=user_id,
                player_name=player_name,
                session_id=session_id,
                is_spectator=len(self._players()) >= MAX_PLAYERS,
            )
            self.seats.append(seat)
            logger.info("[%s] %s joined (spectator=%s)", self.table_id, player_name, seat.is_spectator)
            self._refresh_lobby_phase()
            await self._sync_player_tokens()
            await self._emit_update()
            return seat

    async def leave(self, user_id: int) -> None:
        async with self._lock:
            seat = self._require_seat(user_id)
            if not self.game_started or seat.is_spectator or self.phase in SAFE_LEAVE_PHASES:
                self._remove_seat(seat)
            else:
                seat.disconnected = True
            logger.info("[%s] %s left the table", self.table_id, seat.player_name)
            self._refresh_lobby_phase()
            await self._emit_update()

    async def disconnect(self, user_id: int) -> None:
        async with self._lock:
            seat = self._seat(user_id)
            if seat is None:
                return
            if not self.game_started or seat.is_spectator:
                self._remove_seat(seat)
            else:
                logger.info("[%s] Player %s has disconnected.", self.table_id, seat.player_name)
                seat.disconnected = True
            self._refresh_lobby_phase()
            await self._emit_update()

    async def reconnect(self, user_id: int, session_id: Optional[str] = None) -> Seat:
        async with self._lock:
            seat = self._require_seat(user_id)
            seat.session_id = session_id or seat.session_id
            if seat.disconnected:
                self._mark_reconnected(seat)
            await self._emit_update()
            return seat

    def _mark_reconnected(self, seat: Seat) -> None:
        logger.info("[%s] Reconnecting %s.", self.table_id, seat.player_name)
        seat.disconnected = False
        if self.forfeiture.target_player_name == seat.player_name:
            self._clear_forfeit_timer()
            logger.info("[%s] Cleared forfeit timer for reconnected %s.", self.table_id, seat.player_name)
        self._refresh_lobby_phase()

    # ------------------------------------------------------------------
    # Game lifecycle
    # ------------------------------------------------------------------
    async def start_game(self, user_id: int) -> None:
        async with self._lock:
            self._require_player(user_id)
            if self.game_started:
                raise IllegalAction("Game already started")
            self._require_phase(*PRE_GAME_PHASES)
            players = self._connected_players()
            if len(players) < MIN_PLAYERS:
                raise IllegalAction("Need at least 3 players to start.")
            player_ids = [s.user_id for s in players]
            try:
                game_id = await self.ledger.create_game_record(self.table_id, self.theme, len(player_ids))
                await self.ledger.handle_game_start_transaction(player_ids, game_id, self.buy_in)
            except InsufficientFundsError as exc:
                broke = self._seat(exc.user_id)
                kicked = broke.player_name if broke else exc.username
                logger.warning("[%s] Buy-in failed, removing %s", self.table_id, kicked)
                if broke is not None:
                    self._remove_seat(broke)
                self._refresh_lobby_phase()
                await self.listener.table_event(
                    self,
                    {"type": "gameStartFailed", "message": f"{kicked} has insufficient tokens.", "kickedPlayer": kicked},
                )
                await self._sync_player_tokens()
                await self._emit_update()
                return
            except Exception:
                logger.exception("[%s] Game start failed", self.table_id)
                await self.listener.table_event(
                    self, {"type": "error", "message": "A server error occurred during buy-in."}, user_id=user_id
                )
                return

            self.game_started = True
            self.game_id = game_id
            self.participants = player_ids
            self.player_mode = len(player_ids)
            self.scores = {s.player_name: self.starting_score for s in players}
            if self.player_mode == MIN_PLAYERS:
                self.scores[PLACEHOLDER_ID] = self.starting_score
            self.dealer = self.rng.choice(player_ids)
            self._init_round()
            self.phase = Phase.DEALING_PENDING
            logger.info("[%s] Game %s started with %s players", self.table_id, game_id, self.player_mode)
            await self._sync_player_tokens()
            await self._emit_update()

    async def deal(self, user_id: int) -> None:
        async with self._lock:
            self._require_phase(Phase.DEALING_PENDING)
            if user_id != self.dealer:
                raise IllegalAction("Only the dealer can deal")
            deck = shuffled_deck(self.rng)
            for i, name in enumerate(self.active_order):
                self.hands[name] = deck[i * HAND_SIZE:(i + 1) * HAND_SIZE]
            self.widow = deck[HAND_SIZE * len(self.active_order):]
            self.original_widow = list(self.widow)
            self.auction = Auction(order=list(self.active_order))
            self.phase = Phase.BIDDING
            await self._emit_update()

    async def request_next_round(self, user_id: int) -> None:
        async with self._lock:
            self._require_phase(Phase.AWAITING_NEXT_ROUND)
            if self.round_summary is None or user_id != self.round_summary.dealer_of_round_id:
                raise IllegalAction("Only the dealer can start the next round")
            await self._advance_round()
            await self._emit_update()

    async def _advance_round(self) -> None:
        if not self.game_started:
            return
        try:
            self._rotate_dealer()
            self._init_round()
        except InvariantViolation as exc:
            logger.error("[%s] FATAL: %s. Resetting table.", self.table_id, exc)
            await self._reset()
            return
        self.phase = Phase.DEALING_PENDING
        logger.info("[%s] Round advanced. New dealer: %s", self.table_id, self._name_of(self.dealer))

    def _rotate_dealer(self) -> None:
        if self.dealer not in self.participants:
            raise InvariantViolation("Could not find the dealer")
        idx = self.participants.index(self.dealer)
        self.dealer = self.participants[(idx + 1) % len(self.participants)]

    async def reset(self, user_id: int) -> None:
        async with self._lock:
            self._require_seat(user_id)
            self._require_phase(Phase.GAME_OVER, *PRE_GAME_PHASES)
            await self._reset()

    async def _reset(self) -> None:
        logger.info("[%s] Table is being reset.", self.table_id)
        self._cancel_all_timers()
        kept = [s for s in self.seats if not s.disconnected]
        kept.sort(key=lambda s: s.is_spectator)
        self._reset_game_fields()
        for idx, seat in enumerate(kept):
            seat.is_spectator = idx >= MAX_PLAYERS
        self.seats = kept
        self._refresh_lobby_phase()
        await self._sync_player_tokens()
        await self._emit_update()

    async def _auto_reset(self) -> None:
        if self.phase is Phase.GAME_OVER:
            await self._reset()

    # ------------------------------------------------------------------
    # Bidding
    # ------------------------------------------------------------------
    async def bid(self, user_id: int, bid: str) -> None:
        async with self._lock:
            seat = self._require_player(user_id)
            self._require_phase(Phase.BIDDING, Phase.FROG_UPGRADE)
            if self.auction is None:
                logger.error("[%s] FATAL: Bidding without an auction. Resetting table.", self.table_id)
                await self._reset()
                return
            status = self.auction.place(seat.player_name, bid)
            if status == "upgrade":
                self.phase = Phase.FROG_UPGRADE
            elif status == "resolved":
                self._resolve_bidding()
            await self._emit_update()

    def _resolve_bidding(self) -> None:
        winner = self.auction.winner if self.auction else None
        if winner is None:
            self.phase = Phase.ALL_PASS
            self._schedule("allPass", self.timings.all_pass_reveal_seconds, self._all_pass_advance)
            return
        self.bid_winner = winner
        if winner.bid == FROG:
            self.trump_suit = HEARTS
            self.revealed_widow_for_frog = list(self.widow)
            self.hands[winner.player_name] = self.hands[winner.player_name] + self.widow
            self.widow = []
            self.phase = Phase.FROG_EXCHANGE
        elif winner.bid == HEART_SOLO:
            self.trump_suit = HEARTS
            self._enter_play()
        elif winner.bid == SOLO:
            self.phase = Phase.TRUMP_SELECTION

    async def _all_pass_advance(self) -> None:
        if self.phase is Phase.ALL_PASS:
            await self._advance_round()
            await self._emit_update()

    async def choose_trump(self, user_id: int, suit: str) -> None:
        async with self._lock:
            seat = self._require_player(user_id)
            self._require_phase(Phase.TRUMP_SELECTION)
            if self.bid_winner is None or self.bid_winner.player_name != seat.player_name:
                raise IllegalAction("Only the bidder chooses trump")
            if suit not in TRUMP_CHOICES:
                raise IllegalAction("Trump must be Spades, Clubs or Diamonds")
            self.trump_suit = suit
            self._enter_play()
            await self._emit_update()

    async def submit_discards(self, user_id: int, discards: Sequence[str]) -> None:
        async with self._lock:
            seat = self._require_player(user_id)
            self._require_phase(Phase.FROG_EXCHANGE)
            if self.bid_winner is None or self.bid_winner.player_name != seat.player_name:
                raise IllegalAction("Only the bidder discards")
            discards = list(discards or [])
            if len(discards) != FROG_DISCARD_COUNT or len(set(discards)) != FROG_DISCARD_COUNT:
                raise IllegalAction("Discard exactly three different cards.")
            hand = self.hands.get(seat.player_name, [])
            if not all(card in hand for card in discards):
                raise IllegalAction("Invalid discard selection.")
            self.frog_discards = discards
            self.widow = list(discards)
            self.hands[seat.player_name] = [card for card in hand if card not in discards]
            self._enter_play()
            await self._emit_update()

    def _enter_play(self) -> None:
        self.phase = Phase.PLAYING
        self.tricks_played = 0
        self.trump_broken = False
        self.current_trick = []
        self.lead_suit = None
        self.last_completed_trick = None
        leader = self.bid_winner.player_name
        self.trick_leader = leader
        self.trick_turn = leader
        if self.player_mode == MIN_PLAYERS:
            self.insurance = Insurance.open(
                leader, defenders_of(self.active_order, leader), self.bid_winner.multiplier
            )

    # ------------------------------------------------------------------
    # Trick play
    # ------------------------------------------------------------------
    async def play_card(self, user_id: int, card: str) -> None:
        async with self._lock:
            seat = self._require_player(user_id)
            self._require_phase(Phase.PLAYING)
            name = seat.player_name
            if name != self.trick_turn:
                raise IllegalAction("Not your turn")
            hand = self.hands.get(name, [])
            is_leading = not self.current_trick
            reason = illegal_play_reason(
                hand,
                card,
                is_leading=is_leading,
                lead_suit=self.lead_suit,
                trump_suit=self.trump_suit,
                trump_broken=self.trump_broken,
            )
            if reason:
                raise IllegalAction(reason)

            hand.remove(card)
            self.current_trick.append(TrickPlay(name, card))
            if is_leading:
                self.lead_suit = get_suit(card)
            if get_suit(card) == self.trump_suit:
                self.trump_broken = True

            if len(self.current_trick) == len(self.active_order):
                try:
                    await self._resolve_trick()
                except InvariantViolation as exc:
                    logger.error("[%s] FATAL: %s. Resetting table.", self.table_id, exc)
                    await self._reset()
                    return
            else:
                idx = self.active_order.index(name)
                self.trick_turn = self.active_order[(idx + 1) % len(self.active_order)]
            await self._emit_update()

    async def _resolve_trick(self) -> None:
        winner = determine_trick_winner(self.current_trick, self.lead_suit, self.trump_suit)
        if winner is None:
            raise InvariantViolation("Trick without a winner")
        trick = list(self.current_trick)
        self.last_completed_trick = (trick, winner.player_name)
        self.tricks_played += 1
        self.trick_leader = winner.player_name
        self.trick_turn = None
        self.captured_tricks.setdefault(winner.player_name, []).append([p.card for p in trick])
        if self.tricks_played == TRICKS_PER_ROUND:
            self.current_trick = []
            await self._score_round()
            return
        self.phase = Phase.TRICK_LINGER
        winner_name = winner.player_name
        self._schedule("trickLinger", self.timings.trick_linger_seconds, lambda: self._end_linger(winner_name))

    async def _end_linger(self, winner_name: str) -> None:
        if self.phase is not Phase.TRICK_LINGER:
            return
        self.current_trick = []
        self.lead_suit = None
        self.trick_turn = winner_name
        self.phase = Phase.PLAYING
        await self._emit_update()

    def legal_moves_for(self, user_id: Optional[int]) -> List[str]:
        name = self._name_of(user_id)
        if self.phase is not Phase.PLAYING or name is None or name != self.trick_turn:
            return []
        return legal_moves(
            self.hands.get(name, []),
            is_leading=not self.current_trick,
            lead_suit=self.lead_suit,
            trump_suit=self.trump_suit,
            trump_broken=self.trump_broken,
        )

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------
    async def _score_round(self) -> None:
        result = score_round(
            bid=self.bid_winner,
            active_order=self.active_order,
            player_mode=self.player_mode,
            captured_tricks=self.captured_tricks,
            original_widow=self.original_widow,
            frog_discards=self.frog_discards,
            last_trick_winner=self.trick_leader,
            insurance=self.insurance,
            sitting_out=self._sitting_out(),
        )
        for name, delta in result.point_changes.items():
            if name in self.scores:
                self.scores[name] += delta

        game_over = is_game_over(self.scores)
        message = result.round_message
        game_winner = None
        payouts: Dict[str, Decimal] = {}
        if game_over:
            self._cancel_timer("draw")
            self.draw_request = DrawRequest()
            self._clear_forfeit_timer()
            names = [s.player_name for s in self._participant_seats()]
            settlement = settle_game_over(self.scores, names, self.buy_in)
            game_winner = " & ".join(settlement.winners) or None
            message = f"{message} GAME OVER! Winner: {game_winner}."
            payouts = settlement.payouts
            await self._settle_game_over(settlement, message)

        hindsight = None
        if result.insurance_hindsight is not None:
            hindsight = {
                name: HindsightView(
                    actualPoints=h.actual_points,
                    actualReason=h.actual_reason,
                    potentialPoints=h.potential_points,
                    potentialReason=h.potential_reason,
                    hindsightValue=h.hindsight_value,
                )
                for name, h in result.insurance_hindsight.items()
            }
        self.round_summary = RoundSummary(
            message=message,
            isGameOver=game_over,
            finalScores=dict(self.scores),
            bidWinnerName=self.bid_winner.player_name,
            bidderCardPoints=result.bidder_card_points,
            defenderCardPoints=result.defender_card_points,
            gameWinner=game_winner,
            dealerOfRoundId=self.dealer,
            widowForReveal=result.widow_for_reveal,
            insuranceDealWasMade=self.insurance.deal_executed,
            insuranceDetails=_agreement_view(self.insurance.executed_agreement),
            insuranceHindsight=hindsight,
            allTricks={name: [list(t) for t in tricks] for name, tricks in self.captured_tricks.items()},
            payouts=payouts,
        )
        self.phase = Phase.GAME_OVER if game_over else Phase.AWAITING_NEXT_ROUND
        await self._sync_player_tokens()

    async def _settle_game_over(self, settlement, outcome: str) -> None:
        payout_type = TransactionType.WASH_PAYOUT if settlement.is_tie else TransactionType.WIN_PAYOUT
        postings: List[Posting] = []
        stats: List[StatChange] = []
        for seat in self._participant_seats():
            name = seat.player_name
            if name in settlement.winners:
                postings.append(
                    Posting(
                        seat.user_id,
                        payout_type,
                        settlement.payouts[name],
                        f"Game won on table {self.table_name}",
                    )
                )
                if settlement.is_tie:
                    stats.append(StatChange(seat.user_id, washes=1))
                else:
                    stats.append(StatChange(seat.user_id, wins=1))
            else:
                stats.append(StatChange(seat.user_id, losses=1))
        try:
            await self.ledger.settle_game(self.game_id, postings=postings, stats=stats, outcome=outcome)
            logger.info("[%s] Game over stats and tokens updated.", self.table_id)
        except Exception:
            logger.exception("[%s] Database error during game over update", self.table_id)
            await self._notify("A server error occurred recording the game result.")

    # ------------------------------------------------------------------
    # Insurance
    # ------------------------------------------------------------------
    async def update_insurance(self, user_id: int, setting: str, value) -> None:
        async with self._lock:
            seat = self._require_player(user_id)
            self._require_phase(Phase.PLAYING, Phase.TRICK_LINGER)
            try:
                parsed = int(value)
            except (TypeError, ValueError):
                raise IllegalAction("Insurance value must be a whole number")
            if self.insurance.adjust(seat.player_name, setting, parsed):
                logger.info("[%s] Insurance deal executed: %s", self.table_id, self.insurance.executed_agreement)
            await self._emit_update()

    # ------------------------------------------------------------------
    # Forfeiture
    # ------------------------------------------------------------------
    async def start_forfeit_timer(self, user_id: int, target_player_name: str) -> None:
        async with self._lock:
            seat = self._require_seat(user_id)
            if not self.game_started or self.phase is Phase.GAME_OVER:
                raise IllegalAction("No game in progress")
            if self.forfeiture.is_running:
                raise IllegalAction("A forfeit timer is already running")
            target = self._seat_by_name(target_player_name)
            if target is None or not target.disconnected or target.user_id not in self.participants:
                raise IllegalAction("Cannot start timer: Player is not disconnected.")
            logger.info(
                "[%s] Forfeit timer started for %s by %s.", self.table_id, target_player_name, seat.player_name
            )
            self.forfeiture = Forfeiture(target_player_name, self.timings.forfeit_seconds)
            self._schedule_countdown(
                "forfeit", self._tick_forfeit, lambda: self._resolve_forfeit(target_player_name, "timeout")
            )
            await self._emit_update()

    def _tick_forfeit(self) -> int:
        self.forfeiture.time_left -= 1
        return self.forfeiture.time_left

    async def forfeit(self, user_id: int) -> None:
        async with self._lock:
            seat = self._require_player(user_id)
            if not self.game_started or self.phase is Phase.GAME_OVER or seat.user_id not in self.participants:
                raise IllegalAction("You are not in a running game")
            await self._resolve_forfeit(seat.player_name, "voluntary forfeit")

    async def _resolve_forfeit(self, forfeiting_name: str, reason: str) -> None:
        if self.phase is Phase.GAME_OVER or self.game_id is None:
            return
        logger.info("[%s] Resolving forfeit for %s. Reason: %s", self.table_id, forfeiting_name, reason)
        forfeiter = self._seat_by_name(forfeiting_name)
        remaining = [
            s for s in self._participant_seats() if s.player_name != forfeiting_name and not s.disconnected
        ]
        payouts = calculate_forfeit_payout([s.player_name for s in remaining], self.scores, self.buy_in)
        outcome = f"{forfeiting_name} has forfeited the game due to {reason}."
        postings: List[Posting] = []
        stats: List[StatChange] = []
        if forfeiter is not None:
            postings.append(
                Posting(
                    forfeiter.user_id,
                    TransactionType.FORFEIT_LOSS,
                    Decimal("0"),
                    f"Forfeited game on table {self.table_name}",
                )
            )
            stats.append(StatChange(forfeiter.user_id, losses=1))
        for seat in remaining:
            gain = payouts.get(seat.player_name)
            if gain and gain > 0:
                postings.append(
                    Posting(
                        seat.user_id,
                        TransactionType.FORFEIT_PAYOUT,
                        gain,
                        f"Payout from {forfeiting_name}'s forfeit",
                    )
                )
            stats.append(StatChange(seat.user_id, washes=1))
        try:
            await self.ledger.settle_game(self.game_id, postings=postings, stats=stats, outcome=outcome)
        except Exception:
            logger.exception("[%s] Database error during forfeit resolution", self.table_id)
            # Other timers stay armed so play continues.
            self._clear_forfeit_timer()
            await self._notify("A server error occurred resolving the forfeit.")
            await self._emit_update()
            return

        self._cancel_all_timers()
        self.forfeiture = Forfeiture()
        self.draw_request = DrawRequest()
        self.round_summary = RoundSummary(
            message=f"{outcome} The game has ended.",
            isGameOver=True,
            gameWinner="Payout to remaining players.",
            finalScores=dict(self.scores),
            payouts=payouts,
        )
        self.phase = Phase.GAME_OVER
        await self._sync_player_tokens()
        await self._emit_update()

    # ------------------------------------------------------------------
    # Draw
    # ------------------------------------------------------------------
    async def request_draw(self, user_id: int) -> None:
        async with self._lock:
            seat = self._require_player(user_id)
            self._require_phase(Phase.PLAYING)
            if self.draw_request.is_active:
                raise IllegalAction("A draw vote is already running")
            voters = [s.player_name for s in self._players()]
            self.draw_request = DrawRequest.start(seat.player_name, voters, self.timings.draw_vote_seconds)
            self._schedule_countdown("draw", self._tick_draw, self._resolve_draw)
            await self._emit_update()

    def _tick_draw(self) -> int:
        self.draw_request.timer -= 1
        return self.draw_request.timer

    async def submit_draw_vote(self, user_id: int, vote: str) -> None:
        async with self._lock:
            seat = self._require_player(user_id)
            self.draw_request.cast(seat.player_name, vote)
            if vote == "no":
                self._cancel_timer("draw")
                self.draw_request = DrawRequest()
                await self._notify(f"{seat.player_name} vetoed the draw. Game resumes.")
                await self._emit_update()
                return
            if not self.draw_request.complete:
                await self._emit_update()
                return
            await self._resolve_draw()

    async def _resolve_draw(self) -> None:
        request = self.draw_request
        self._cancel_timer("draw")
        if not request.is_active or self.phase is Phase.GAME_OVER:
            return
        outcome = tally_draw(request.votes)
        participants = self._participant_seats()
        names = [s.player_name for s in participants]
        if outcome == "split":
            message = "A split was agreed upon. Payouts calculated by score."
            payouts = calculate_draw_split_payout(names, self.scores, self.buy_in)
            payout_type = TransactionType.WIN_PAYOUT
            description = "Draw Outcome: Split"
        else:
            unanimous = all(v == "wash" for v in request.votes.values())
            message = (
                "All players agreed to a wash. All buy-ins returned."
                if unanimous
                else "The draw resulted in a wash. All buy-ins returned."
            )
            payouts = {name: self.buy_in for name in names}
            payout_type = TransactionType.WASH_PAYOUT
            description = "Draw Outcome: Wash" if unanimous else "Draw Outcome: Wash (Default)"
        postings = [
            Posting(seat.user_id, payout_type, payouts[seat.player_name], description)
            for seat in participants
            if payouts.get(seat.player_name, 0) > 0
        ]
        try:
            await self.ledger.settle_game(self.game_id, postings=postings, stats=[], outcome=message)
        except Exception:
            logger.exception("[%s] Error resolving draw vote", self.table_id)
            self.draw_request = DrawRequest()
            await self._notify("A server error occurred resolving the draw. Resuming game.")
            await self._emit_update()
            return

        self.draw_request = DrawRequest()
        self._clear_forfeit_timer()
        self.round_summary = RoundSummary(
            message=message, isGameOver=True, finalScores=dict(self.scores), payouts=payouts
        )
        self.phase = Phase.GAME_OVER
        await self._sync_player_tokens()
        await self._emit_update()
        self._schedule("drawReset", self.timings.draw_reset_seconds, self._auto_reset)

    # ------------------------------------------------------------------
    # Client projection
    # ------------------------------------------------------------------
    def to_state(self, viewer_id: Optional[int]) -> TableState:
        viewer = self._name_of(viewer_id)
        hand = self.hands.get(viewer) if viewer else None
        is_bidder = bool(self.bid_winner and viewer == self.bid_winner.player_name)
        last_trick = None
        if self.last_completed_trick is not None:
            plays, winner_name = self.last_completed_trick
            last_trick = CompletedTrickView(
                cards=[TrickCardView(playerName=p.player_name, card=p.card) for p in plays],
                winnerName=winner_name,
            )
        auction = self.auction
        insurance = self.insurance
        return TableState(
            tableId=self.table_id,
            tableName=self.table_name,
            theme=self.theme,
            state=self.phase,
            players=[s.model_copy() for s in self.seats],
            playerOrderActive=list(self.active_order),
            playerMode=self.player_mode,
            dealer=self.dealer,
            gameStarted=self.game_started,
            scores=dict(self.scores),
            playerTokens=dict(self.player_tokens),
            hand=list(hand) if hand is not None else None,
            handCounts={name: len(cards) for name, cards in self.hands.items()},
            widow=list(self.original_widow) if self.phase is Phase.ALL_PASS else [],
            widowCount=len(self.widow),
            revealedWidowForFrog=list(self.revealed_widow_for_frog),
            widowDiscardsForFrogBidder=list(self.frog_discards) if is_bidder else [],
            currentHighestBidDetails=_bid_view(auction.highest) if auction else None,
            biddingTurnPlayerName=auction.turn if auction else None,
            playersWhoPassedThisRound=list(auction.passed) if auction else [],
            originalFrogBidder=auction.original_frog_bidder if auction else None,
            soloBidMadeAfterFrog=auction.solo_after_frog if auction else False,
            bidWinnerInfo=_bid_view(self.bid_winner),
            trumpSuit=self.trump_suit,
            trumpBroken=self.trump_broken,
            currentTrickCards=[TrickCardView(playerName=p.player_name, card=p.card) for p in self.current_trick],
            leadSuitCurrentTrick=self.lead_suit,
            trickTurnPlayerName=self.trick_turn,
            trickLeaderName=self.trick_leader,
            tricksPlayedCount=self.tricks_played,
            capturedTrickCounts={name: len(tricks) for name, tricks in self.captured_tricks.items()},
            lastCompletedTrick=last_trick,
            legalMoves=self.legal_moves_for(viewer_id),
            insurance=InsuranceView(
                isActive=insurance.is_active,
                bidMultiplier=insurance.bid_multiplier,
                bidderPlayerName=insurance.bidder_player_name,
                bidderRequirement=insurance.bidder_requirement,
                defenderOffers=dict(insurance.defender_offers),
                dealExecuted=insurance.deal_executed,
                executedAgreement=_agreement_view(insurance.executed_agreement),
            ),
            forfeiture=ForfeitureView(
                targetPlayerName=self.forfeiture.target_player_name,
                timeLeft=self.forfeiture.time_left,
            ),
            drawRequest=DrawRequestView(
                isActive=self.draw_request.is_active,
                initiator=self.draw_request.initiator,
                votes=dict(self.draw_request.votes),
                timer=self.draw_request.timer,
            ),
            roundSummary=self.round_summary,
        )


# ----------------------------------------------------------------------
# Command dispatch
# ----------------------------------------------------------------------
async def apply_command(table: Table, user_id: int, command, *, session_id: Optional[str] = None) -> None:
    if isinstance(command, JoinCommand):
        await table.join(user_id, command.player_name, session_id)
    elif isinstance(command, LeaveCommand):
        await table.leave(user_id)
    elif isinstance(command, StartGameCommand):
        await table.start_game(user_id)
    elif isinstance(command, DealCommand):
        await table.deal(user_id)
    elif isinstance(command, BidCommand):
        await table.bid(user_id, command.bid)
    elif isinstance(command, ChooseTrumpCommand):
        await table.choose_trump(user_id, command.suit)
    elif isinstance(command, SubmitDiscardsCommand):
        await table.submit_discards(user_id, command.discards)
    elif isinstance(command, PlayCardCommand):
        await table.play_card(user_id, command.card)
    elif isinstance(command, NextRoundCommand):
        await table.request_next_round(user_id)
    elif isinstance(command, StartForfeitTimerCommand):
        await table.start_forfeit_timer(user_id, command.target_player_name)
    elif isinstance(command, ForfeitCommand):
        await table.forfeit(user_id)
    elif isinstance(command, RequestDrawCommand):
        await table.request_draw(user_id)
    elif isinstance(command, DrawVoteCommand):
        await table.submit_draw_vote(user_id, command.vote)
    elif isinstance(command, InsuranceCommand):
        await table.update_insurance(user_id, command.setting, command.value)
    elif isinstance(command, ResetCommand):
        await table.reset(user_id)
    else:
        raise IllegalAction(f"Unknown command: {command!r}")


TABLES: Dict[str, Table] = {}


def init_tables(ledger: LedgerGateway, listener: TableListener, settings) -> Dict[str, Table]:
    theme_title = settings.table_theme.replace("-", " ").title()
    timings = Timings.from_settings(settings)
    for number in range(1, settings.table_count + 1):
        table_id = f"table-{number}"
        TABLES[table_id] = Table(
            table_id,
            f"{theme_title} #{number}",
            ledger=ledger,
            listener=listener,
            theme=settings.table_theme,
            buy_in=settings.buy_in,
            starting_score=settings.starting_score,
            timings=timings,
        )
    logger.info("%s in-memory game tables initialized.", len(TABLES))
    return TABLES
