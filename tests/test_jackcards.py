import jackcards
from jackcards import Card, DeviceIdentity

from conftest import FOCUSRITE, FOCUSRITE_AND_M4, INTERNAL_ONLY

HDMI_ONLY = """\
card 0: NVidia [HDA NVidia], device 3: HDMI 0 [HDMI 0]
card 1: sofhdadsp [sof-hda-dsp], device 0: HDA Analog (*) []
"""


def test_parse_cards_deduplicates_devices():
    cards = jackcards.parse_cards(INTERNAL_ONLY)
    assert cards == [Card("0", "PCH", "HDA Intel PCH")]


def test_parse_cards_keeps_listing_order():
    cards = jackcards.parse_cards(FOCUSRITE_AND_M4)
    assert [card.card_id for card in cards] == ["PCH", "Focusrite", "M4"]


def test_internal_patterns():
    assert jackcards.is_internal(Card("0", "PCH", "HDA Intel PCH"))
    assert jackcards.is_internal(Card("0", "NVidia", "HDA NVidia"))
    assert jackcards.is_internal(Card("1", "sofhdadsp", "sof-hda-dsp"))
    assert not jackcards.is_internal(Card("1", "Focusrite", "Scarlett 2i2 USB"))


def test_only_internal_cards_gives_nothing():
    assert jackcards.detect_external(INTERNAL_ONLY) is None
    assert jackcards.detect_external(HDMI_ONLY) is None
    assert not jackcards.any_external_present(INTERNAL_ONLY)


def test_external_after_internal():
    identity = jackcards.detect_external(FOCUSRITE)
    assert identity == DeviceIdentity("Focusrite", "hw:Focusrite,0", "Focusrite")


def test_first_external_wins():
    assert jackcards.detect_external(FOCUSRITE_AND_M4).card_id == "Focusrite"
    reordered = INTERNAL_ONLY + "card 2: M4 [MOTU M4], device 0: USB Audio [USB Audio]\n" \
        + "card 3: Focusrite [Scarlett 2i2 USB], device 0: USB Audio [USB Audio]\n"
    assert jackcards.detect_external(reordered).card_id == "M4"


def test_detected_identity_records_match_pattern():
    identity = jackcards.detect_external(FOCUSRITE_AND_M4)
    assert identity.match_pattern == "Focusrite"


def test_is_available_by_id_and_number():
    assert jackcards.is_available(DeviceIdentity.from_path("hw:M4,0"), FOCUSRITE_AND_M4)
    assert jackcards.is_available(DeviceIdentity.from_path("hw:2,0"), FOCUSRITE_AND_M4)
    assert not jackcards.is_available(DeviceIdentity.from_path("hw:M4,0"), FOCUSRITE)
    assert not jackcards.is_available(DeviceIdentity.from_path("plughw"), FOCUSRITE)


def test_card_id_from_path():
    assert jackcards.card_id_from_path("hw:Focusrite,0") == "Focusrite"
    assert jackcards.card_id_from_path("hw:1") == "1"
    assert jackcards.card_id_from_path("default") is None


def test_failing_aplay_is_an_empty_listing():
    def run(argv, env=None, timeout=None):
        return 1, "aplay: device_list:274: no soundcards found..."

    assert jackcards.aplay_listing(run) == ""
    assert jackcards.detect_external(run=run) is None


def test_aplay_runs_with_c_locale():
    seen = {}

    def run(argv, env=None, timeout=None):
        seen["argv"], seen["env"] = argv, env
        return 0, FOCUSRITE

    assert jackcards.list_cards(run=run)[1].card_id == "Focusrite"
    assert seen["argv"] == ["aplay", "-l"]
    assert seen["env"]["LC_ALL"] == "C"
