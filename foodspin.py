#!/usr/bin/env python3
"""
FoodSpin - Vote on dishes and spin a weighted wheel to pick dinner.

This module holds the voting core: the in-memory vote tally, the 70/30
majority-weighted selection policy and the spin orchestration used by the
web server (``foodspin_server.py``).  It has no I/O of its own apart from
configuration loading and the small command-line interface at the bottom.
"""

import argparse
import json
import logging
import os
import random
import sys
from collections import OrderedDict
from typing import Dict, Iterable, Iterator, List, Optional
from colorama import init, Fore, Style

# Initialize colorama for cross-platform colored terminal output
init(autoreset=True)

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def setup_logging(level: str = 'WARNING') -> logging.Logger:
    """Configure the root FoodSpin logger.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               Defaults to WARNING so normal use is quiet.

    Returns:
        Configured logger instance.
    """
    numeric = getattr(logging, level.upper(), logging.WARNING)
    logger = logging.getLogger('foodspin')
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('[%(levelname)s] %(name)s: %(message)s'))
        logger.addHandler(handler)
    logger.setLevel(numeric)
    return logger


logger = setup_logging()
engine_logger = logging.getLogger('foodspin.engine')

# ---------------------------------------------------------------------------
# Policy constants
# ---------------------------------------------------------------------------

MIN_CANDIDATES = 2
MAX_CANDIDATES = 12

# Probability mass shared by the top-voted dishes; the rest goes to the others.
LEADER_SHARE = 0.7
OTHERS_SHARE = 0.3

DISTRIBUTION_TOLERANCE = 1e-9

DEFAULT_DISHES = ['Pizza', 'Burger', 'Sushi', 'Tacos']

DEFAULT_CONFIG = {
    'database_url': 'sqlite:///foodspin.db',
    'secret_key': None,
    'log_level': 'INFO',
    'host': '127.0.0.1',
    'port': 5001,
    'cleanup_interval_hours': 6.0,
}

# config key -> environment variable
ENV_OVERRIDES = {
    'database_url': 'DATABASE_URL',
    'secret_key': 'FOODSPIN_SECRET_KEY',
    'log_level': 'FOODSPIN_LOG_LEVEL',
    'host': 'FOODSPIN_HOST',
    'port': 'FOODSPIN_PORT',
    'cleanup_interval_hours': 'FOODSPIN_CLEANUP_INTERVAL_HOURS',
}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class FoodSpinError(Exception):
    """Base class for all FoodSpin domain errors."""


class TallyError(FoodSpinError):
    """Raised when a vote tally mutation would break a structural rule."""


class DuplicateCandidateError(TallyError):
    """Raised when a dish with the same name is already on the wheel."""


class CandidateNotFoundError(TallyError):
    """Raised when a dish is not part of the tally."""


class CapacityExceededError(TallyError):
    """Raised when adding a dish to a full wheel."""


class MinimumCandidatesError(TallyError):
    """Raised when removing a dish would leave fewer than two on the wheel."""


class SpinError(FoodSpinError):
    """Raised when a tally cannot be spun."""


class EmptyTallyError(SpinError):
    """Raised when spinning a tally with no dishes."""


class InsufficientCandidatesError(SpinError):
    """Raised when spinning a tally with a single dish."""


class SessionNotFoundError(FoodSpinError):
    """Raised when a voting session does not exist, has expired or is not owned by the caller."""


# ---------------------------------------------------------------------------
# Vote tally
# ---------------------------------------------------------------------------

class Candidate:
    """A single dish on the wheel and its current vote count."""

    def __init__(self, name: str, votes: int = 0):
        self.name = name
        self.votes = votes

    def to_dict(self) -> Dict:
        return {'name': self.name, 'votes': self.votes}

    def __eq__(self, other) -> bool:
        if not isinstance(other, Candidate):
            return NotImplemented
        return self.name == other.name and self.votes == other.votes

    def __repr__(self) -> str:
        return f"Candidate({self.name!r}, votes={self.votes})"


class VoteTally:
    """Ordered set of dishes and their votes for one voting session.

    Insertion order is kept for display and for walking the wheel during a
    spin; it does not influence the probabilities.  Names are compared
    case-sensitively.
    """

    def __init__(self, names: Optional[Iterable[str]] = None):
        """
        Args:
            names: Optional dish names to pre-seed the tally with, each
                   starting at zero votes.
        """
        self._candidates: List[Candidate] = []
        for name in names or []:
            self.add_candidate(name)

    @classmethod
    def from_records(cls, records: Iterable[Dict]) -> 'VoteTally':
        """Rebuild a tally from ``{'name': ..., 'votes': ...}`` dicts.

        The same invariants as the mutators apply: unique names, at most
        :data:`MAX_CANDIDATES` dishes and no negative vote counts.
        """
        tally = cls()
        for record in records:
            votes = int(record.get('votes') or 0)
            if votes < 0:
                raise ValueError(f"Vote count for '{record.get('name')}' cannot be negative")
            tally.add_candidate(record['name'])
            tally._candidates[-1].votes = votes
        return tally

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------

    def add_candidate(self, name: str) -> Candidate:
        """Append a new dish with zero votes.

        Raises:
            ValueError: If *name* is blank.
            DuplicateCandidateError: If the dish is already on the wheel.
            CapacityExceededError: If the wheel already holds
                :data:`MAX_CANDIDATES` dishes.
        """
        name = (name or '').strip()
        if not name:
            raise ValueError("Dish name is required")
        if name in self:
            raise DuplicateCandidateError(f"Dish '{name}' is already on the wheel")
        if len(self._candidates) >= MAX_CANDIDATES:
            raise CapacityExceededError(f"Maximum {MAX_CANDIDATES} dishes reached")
        candidate = Candidate(name)
        self._candidates.append(candidate)
        return candidate

    def remove_candidate(self, name: str) -> None:
        """Remove a dish, keeping at least :data:`MIN_CANDIDATES` on the wheel."""
        candidate = self._require(name)
        if len(self._candidates) - 1 < MIN_CANDIDATES:
            raise MinimumCandidatesError(f"Minimum {MIN_CANDIDATES} dishes required")
        self._candidates.remove(candidate)

    def increment_vote(self, name: str) -> int:
        """Add one vote to *name* and return its new count."""
        candidate = self._require(name)
        candidate.votes += 1
        return candidate.votes

    def decrement_vote(self, name: str) -> bool:
        """Remove one vote from *name*.

        Returns:
            ``True`` if a vote was removed, ``False`` when the dish already
            had zero votes (the tally is left untouched).
        """
        candidate = self._require(name)
        if candidate.votes == 0:
            return False
        candidate.votes -= 1
        return True

    def reset_votes(self) -> None:
        for candidate in self._candidates:
            candidate.votes = 0

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, name: str) -> Optional[Candidate]:
        """Look up a dish, ignoring surrounding whitespace as add_candidate does."""
        name = (name or '').strip()
        for candidate in self._candidates:
            if candidate.name == name:
                return candidate
        return None

    def names(self) -> List[str]:
        return [c.name for c in self._candidates]

    def total_votes(self) -> int:
        return sum(c.votes for c in self._candidates)

    def is_spinnable(self) -> bool:
        return len(self._candidates) >= MIN_CANDIDATES

    def leaders(self) -> List[Candidate]:
        """Return the dishes holding the highest vote count (ties included)."""
        if not self._candidates:
            return []
        max_votes = max(c.votes for c in self._candidates)
        return [c for c in self._candidates if c.votes == max_votes]

    def copy(self) -> 'VoteTally':
        """Return an independent snapshot of this tally."""
        return VoteTally.from_records(self.to_list())

    def to_list(self) -> List[Dict]:
        return [c.to_dict() for c in self._candidates]

    def _require(self, name: str) -> Candidate:
        candidate = self.get(name)
        if candidate is None:
            raise CandidateNotFoundError(f"Dish '{name}' not found")
        return candidate

    def __len__(self) -> int:
        return len(self._candidates)

    def __iter__(self) -> Iterator[Candidate]:
        return iter(list(self._candidates))

    def __contains__(self, name) -> bool:
        return self.get(name) is not None

    def __repr__(self) -> str:
        return f"VoteTally({self.to_list()!r})"


# ---------------------------------------------------------------------------
# Selection engine
# ---------------------------------------------------------------------------

def _check_spinnable(tally: VoteTally) -> None:
    if len(tally) == 0:
        raise EmptyTallyError("Add some dishes before spinning")
    if not tally.is_spinnable():
        raise InsufficientCandidatesError(f"At least {MIN_CANDIDATES} dishes required to spin")


def compute_distribution(tally: VoteTally) -> 'OrderedDict[str, float]':
    """Compute the probability of each dish winning the next spin.

    With no votes at all every dish is equally likely.  Otherwise the
    top-voted dishes share 70% of the wheel and everyone else splits the
    remaining 30% in proportion to their votes (evenly when none of them has
    a vote).  When every dish is tied for the lead the whole wheel is split
    evenly between them.

    Returns:
        Mapping of dish name to probability, in tally order.  Values sum to
        1.0 within floating-point tolerance.

    Raises:
        EmptyTallyError: If the tally has no dishes.
        InsufficientCandidatesError: If the tally has a single dish.
    """
    _check_spinnable(tally)
    candidates = list(tally)

    if tally.total_votes() == 0:
        share = 1.0 / len(candidates)
        return OrderedDict((c.name, share) for c in candidates)

    leaders = tally.leaders()
    leader_names = {c.name for c in leaders}
    others = [c for c in candidates if c.name not in leader_names]

    if not others:
        leader_share = 1.0 / len(leaders)
    else:
        leader_share = LEADER_SHARE / len(leaders)
    others_total = sum(c.votes for c in others)

    distribution: 'OrderedDict[str, float]' = OrderedDict()
    for candidate in candidates:
        if candidate.name in leader_names:
            distribution[candidate.name] = leader_share
        elif others_total == 0:
            distribution[candidate.name] = OTHERS_SHARE / len(others)
        else:
            distribution[candidate.name] = OTHERS_SHARE * candidate.votes / others_total
    return distribution


def _sample(distribution: Dict[str, float], r: float) -> str:
    """Walk *distribution* in order and return the first name whose cumulative mass reaches *r*."""
    cumulative = 0.0
    for name, probability in distribution.items():
        cumulative += probability
        if r <= cumulative:
            return name
    # Rounding left r just above the accumulated total.
    return list(distribution)[-1]


def select_winner(tally: VoteTally, rng=None) -> str:
    """Pick the winning dish name for *tally*.

    Args:
        tally: Tally to spin (not modified).
        rng:   Object exposing ``random()`` returning a float in [0, 1).
               Defaults to the :mod:`random` module.
    """
    distribution = compute_distribution(tally)
    return _sample(distribution, (rng or random).random())


# ---------------------------------------------------------------------------
# Spin orchestration
# ---------------------------------------------------------------------------

class SelectionOutcome:
    """Result of one spin: the winner and the odds every dish had."""

    def __init__(self, winner_name: str, distribution: Dict[str, float],
                 sector_index: int = 0, winner_votes: int = 0):
        self.winner_name = winner_name
        self.distribution = distribution
        self.sector_index = sector_index
        self.winner_votes = winner_votes

    def to_dict(self) -> Dict:
        """Serialise the outcome for API responses."""
        return {
            'winner': {
                'name': self.winner_name,
                'votes': self.winner_votes,
                'sector_index': self.sector_index,
            },
            'distribution': [
                {'name': name, 'probability': probability}
                for name, probability in self.distribution.items()
            ],
        }

    def __repr__(self) -> str:
        return f"SelectionOutcome(winner={self.winner_name!r})"


def spin(tally: VoteTally, rng=None) -> SelectionOutcome:
    """Spin the wheel once for *tally*.

    Works on a snapshot so the caller's tally is never touched.  Persisting
    the outcome is left to the caller.

    Raises:
        EmptyTallyError: If the tally has no dishes.
        InsufficientCandidatesError: If the tally has a single dish.
    """
    snapshot = tally.copy()
    distribution = compute_distribution(snapshot)
    winner = _sample(distribution, (rng or random).random())
    names = snapshot.names()
    outcome = SelectionOutcome(
        winner_name=winner,
        distribution=distribution,
        sector_index=names.index(winner),
        winner_votes=snapshot.get(winner).votes,
    )
    engine_logger.debug("Spin over %d dishes (%d votes) -> %s",
                        len(snapshot), snapshot.total_votes(), winner)
    return outcome


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def load_config(config_path: str = 'config.json') -> Dict:
    """Load configuration from a JSON file with environment variable support.

    A missing file is not an error; defaults are used instead.  Environment
    variables take precedence over file values:

    - DATABASE_URL overrides database_url
    - FOODSPIN_SECRET_KEY overrides secret_key
    - FOODSPIN_LOG_LEVEL overrides log_level
    - FOODSPIN_HOST / FOODSPIN_PORT override host / port
    - FOODSPIN_CLEANUP_INTERVAL_HOURS overrides cleanup_interval_hours
    """
    config = dict(DEFAULT_CONFIG)
    if config_path and os.path.exists(config_path):
        try:
            with open(config_path, 'r') as f:
                config.update(json.load(f))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not load config %s: %s", config_path, e)

    for key, env_var in ENV_OVERRIDES.items():
        if os.getenv(env_var):
            config[key] = os.getenv(env_var)

    config['port'] = int(config['port'])
    config['cleanup_interval_hours'] = float(config['cleanup_interval_hours'])
    return config


# ---------------------------------------------------------------------------
# Command-line interface
# ---------------------------------------------------------------------------

def parse_dish_args(items: List[str]) -> VoteTally:
    """Build a tally from ``NAME`` or ``NAME:VOTES`` command-line items."""
    records = []
    for item in items:
        name, sep, votes = item.rpartition(':')
        if not sep or not votes.strip().isdigit():
            name, votes = item, '0'
        records.append({'name': name, 'votes': int(votes)})
    return VoteTally.from_records(records)


def print_outcome(outcome: SelectionOutcome) -> None:
    print(f"\n{Fore.CYAN}{'=' * 50}")
    print(f"{Fore.CYAN}Odds for this spin:")
    for name, probability in outcome.distribution.items():
        marker = f"{Fore.GREEN}<-- winner" if name == outcome.winner_name else ''
        print(f"  {name:<24} {probability * 100:6.2f}% {marker}")
    print(f"{Fore.CYAN}{'=' * 50}")
    print(f"{Fore.GREEN}{Style.BRIGHT}You're having: {outcome.winner_name}!")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description='FoodSpin - spin a vote-weighted wheel to pick a dish')
    parser.add_argument('dishes', nargs='*',
                        help='Dishes as NAME or NAME:VOTES (defaults to Pizza, Burger, Sushi, Tacos)')
    parser.add_argument('--seed', type=int, default=None,
                        help='Seed the random source for a reproducible spin')
    parser.add_argument('--odds-only', action='store_true',
                        help='Print the odds without picking a winner')
    parser.add_argument('--log-level', default='WARNING', help='Logging level')
    args = parser.parse_args(argv)

    setup_logging(args.log_level)

    try:
        tally = parse_dish_args(args.dishes) if args.dishes else VoteTally(DEFAULT_DISHES)
        if args.odds_only:
            for name, probability in compute_distribution(tally).items():
                print(f"{name:<24} {probability * 100:6.2f}%")
            return 0
        outcome = spin(tally, random.Random(args.seed))
    except (FoodSpinError, ValueError) as e:
        print(f"{Fore.RED}Error: {e}")
        return 1

    print_outcome(outcome)
    return 0


if __name__ == '__main__':
    sys.exit(main())
