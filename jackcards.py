#!/usr/bin/env python3

import logging
import os
import re
from dataclasses import dataclass
from typing import List, Optional

from jackbus import run_command

# ==== CONFIGURATION ====
# Onboard, HDMI and chipset controllers never get auto-selected.
INTERNAL_DEVICE_PATTERNS = (
    "HDA NVidia",
    "HDA Intel",
    "HDA ATI",
    "HDA AMD",
    "HDMI",
    "sof-",
    "PCH",
)

CARD_LINE = re.compile(r"^card (\d+): ([a-zA-Z0-9_]+) \[([^\]]+)\]")
DEVICE_PATH = re.compile(r"^hw:([^,]+)(?:,(\d+))?")


@dataclass(frozen=True)
class Card:
    number: str
    card_id: str
    name: str


@dataclass(frozen=True)
class DeviceIdentity:
    card_id: str
    device_path: str
    match_pattern: Optional[str] = None

    @classmethod
    def for_card(cls, card_id, subdevice=0):
        return cls(card_id, f"hw:{card_id},{subdevice}", card_id)

    @classmethod
    def from_path(cls, device_path, match_pattern=None):
        return cls(card_id_from_path(device_path) or "", device_path, match_pattern)


def card_id_from_path(device_path):
    match = DEVICE_PATH.match(device_path or "")
    return match.group(1) if match else None


# ==== HARDWARE LISTING ====
def aplay_listing(run=run_command):
    env = dict(os.environ, LC_ALL="C")
    code, output = run(["aplay", "-l"], env=env)
    if code != 0:
        logging.debug(f"aplay -l returned {code}: {output.strip()}")
        return ""
    return output


def parse_cards(listing) -> List[Card]:
    cards = []
    seen = set()
    for line in (listing or "").splitlines():
        match = CARD_LINE.match(line)
        if not match:
            continue
        number, card_id, name = match.groups()
        # aplay prints one line per PCM device of a card
        if number in seen:
            continue
        seen.add(number)
        cards.append(Card(number, card_id, name))
    return cards


def list_cards(listing=None, run=run_command):
    if listing is None:
        listing = aplay_listing(run)
    return parse_cards(listing)


def is_internal(card):
    text = f"{card.name} {card.card_id}".lower()
    return any(pattern.lower() in text for pattern in INTERNAL_DEVICE_PATTERNS)


def external_cards(cards):
    return [card for card in cards if not is_internal(card)]


# ==== DETECTION ====
def detect_external(listing=None, run=run_command) -> Optional[DeviceIdentity]:
    """First external card in enumeration order."""
    candidates = external_cards(list_cards(listing, run))
    if not candidates:
        return None
    chosen = candidates[0]
    logging.debug(f"Found external audio device: {chosen.name} ({chosen.card_id})")
    return DeviceIdentity.for_card(chosen.card_id)


def is_available(identity, listing=None, run=run_command):
    card_id = identity.card_id or card_id_from_path(identity.device_path)
    if not card_id:
        return False
    return any(card_id in (card.card_id, card.number) for card in list_cards(listing, run))


def any_external_present(listing=None, run=run_command):
    return bool(external_cards(list_cards(listing, run)))
