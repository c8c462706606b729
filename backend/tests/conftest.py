import asyncio
import os
import random
import tempfile
from collections import defaultdict
from decimal import Decimal

os.environ.setdefault(
    "DATABASE_URL", "sqlite+aiosqlite:///" + os.path.join(tempfile.mkdtemp(), "frog-test.db")
)
os.environ.setdefault("SECRET_KEY", "test-secret-key-with-at-least-32-bytes")

from errors import InsufficientFundsError, LedgerError
from game import Table, Timings
from models import Phase

NAMES = ["alice", "bob", "carol", "dave", "erin"]

FAST = Timings(
    forfeit_seconds=3,
    draw_vote_seconds=3,
    tick_interval=0.01,
    trick_linger_seconds=0.01,
    all_pass_reveal_seconds=0.01,
    draw_reset_seconds=0.05,
)


class FakeLedger:
    """In-memory ledger that records every call."""

    def __init__(self, balances=None):
        self.balances = defaultdict(lambda: Decimal("0.00"), balances or {})
        self.transactions = []
        self.stats = defaultdict(lambda: {"wins": 0, "losses": 0, "washes": 0})
        self.outcomes = {}
        self.fail_on = set()
        self._next_game_id = 1

    def _maybe_fail(self, name):
        if name in self.fail_on:
            raise LedgerError(f"{name} failed")

    async def create_game_record(self, table_id, theme, player_count):
        self._maybe_fail("create_game_record")
        game_id = self._next_game_id
        self._next_game_id += 1
        self.outcomes[game_id] = "In Progress"
        return game_id

    async def post_transaction(self, *, user_id, game_id, type, amount, description):
        self._maybe_fail("post_transaction")
        record = {
            "user_id": user_id,
            "game_id": game_id,
            "type": type,
            "amount": Decimal(amount),
            "description": description,
        }
        self.transactions.append(record)
        self.balances[user_id] += Decimal(amount)
        return record

    async def update_game_record_outcome(self, game_id, outcome):
        self._maybe_fail("update_game_record_outcome")
        self.outcomes[game_id] = outcome

    async def handle_game_start_transaction(self, player_ids, game_id, buy_in):
        self._maybe_fail("handle_game_start_transaction")
        for pid in player_ids:
            if self.balances[pid] < buy_in:
                raise InsufficientFundsError(pid)
        for pid in player_ids:
            self.transactions.append(
                {"user_id": pid, "game_id": game_id, "type": "buy_in", "amount": -buy_in, "description": "Buy-in"}
            )
            self.balances[pid] -= buy_in

    async def get_balance(self, user_id):
        self._maybe_fail("get_balance")
        return self.balances[user_id]

    async def get_balances(self, user_ids):
        return {uid: self.balances[uid] for uid in user_ids}

    async def update_player_stats(self, user_id, *, wins=0, losses=0, washes=0):
        self._maybe_fail("update_player_stats")
        entry = self.stats[user_id]
        entry["wins"] += wins
        entry["losses"] += losses
        entry["washes"] += washes

    async def settle_game(self, game_id, *, postings, stats, outcome):
        self._maybe_fail("settle_game")
        for posting in postings:
            self.transactions.append(
                {
                    "user_id": posting.user_id,
                    "game_id": game_id,
                    "type": posting.type,
                    "amount": Decimal(posting.amount),
                    "description": posting.description,
                }
            )
            self.balances[posting.user_id] += Decimal(posting.amount)
        for change in stats:
            entry = self.stats[change.user_id]
            entry["wins"] += change.wins
            entry["losses"] += change.losses
            entry["washes"] += change.washes
        self.outcomes[game_id] = outcome

    def of_type(self, kind):
        return [t for t in self.transactions if t["type"] == kind]


class RecordingListener:
    def __init__(self):
        self.updates = 0
        self.events = []

    async def table_updated(self, table):
        self.updates += 1

    async def table_event(self, table, message, user_id=None):
        self.events.append((message, user_id))


def make_table(ledger=None, seed=7, **kwargs):
    ledger = ledger or FakeLedger({user_id: Decimal("10.00") for user_id in range(1, 6)})
    return Table(
        "table-1",
        "Test Table #1",
        ledger=ledger,
        listener=RecordingListener(),
        timings=kwargs.pop("timings", FAST),
        rng=random.Random(seed),
        **kwargs,
    )


def uid(table, name):
    return table._seat_by_name(name).user_id


async def seat_players(table, count):
    for user_id in range(1, count + 1):
        await table.join(user_id, NAMES[user_id - 1])
    return table


async def started_table(count=3, **kwargs):
    table = make_table(**kwargs)
    await seat_players(table, count)
    await table.start_game(1)
    return table


async def dealt_table(count=3, **kwargs):
    table = await started_table(count, **kwargs)
    await table.deal(table.dealer)
    return table


async def bid_frog_and_discard(table):
    """First bidder takes Frog, the rest pass, then the bidder discards three cards."""
    bidder, *others = table.active_order
    await table.bid(uid(table, bidder), "Frog")
    for name in others:
        await table.bid(uid(table, name), "Pass")
    discards = table.hands[bidder][:3]
    await table.submit_discards(uid(table, bidder), discards)
    return bidder


async def wait_for_phase(table, *phases, timeout=2.0):
    async def _poll():
        while table.phase not in phases:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


async def play_out_round(table, max_plays=200):
    for _ in range(max_plays):
        if table.phase is Phase.TRICK_LINGER:
            await wait_for_phase(table, Phase.PLAYING)
            continue
        if table.phase is not Phase.PLAYING:
            return
        user_id = uid(table, table.trick_turn)
        await table.play_card(user_id, table.legal_moves_for(user_id)[0])
    raise AssertionError("round did not finish")
