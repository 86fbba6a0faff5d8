import pytest

import grading


def test_default_grade_boundaries():
    assert grading.default_grade(100)["grade"] == "1"
    assert grading.default_grade(80)["grade"] == "1"
    assert grading.default_grade(79)["grade"] == "2"
    assert grading.default_grade(40)["grade"] == "8"
    assert grading.default_grade(0) == {"grade": "9", "remark": "Fail"}


def test_fractional_percentage_in_band_gap_takes_lower_band():
    assert grading.default_grade(79.5)["grade"] == "2"
    assert grading.default_grade(39.99)["grade"] == "9"


def test_validate_bands_sorts_highest_first_and_accepts_camel_case():
    bands = grading.validate_bands([
        {"grade": "C", "minPercent": 0, "maxPercent": 49},
        {"grade": "A", "min_percent": 75, "max_percent": 100, "remark": "Top"},
        {"grade": "B", "min_percent": 50, "max_percent": 74},
    ])
    assert [b["grade"] for b in bands] == ["A", "B", "C"]
    assert bands[0]["remark"] == "Top"


def test_validate_bands_rejects_overlap():
    with pytest.raises(ValueError, match="overlap"):
        grading.validate_bands([
            {"grade": "A", "min_percent": 70, "max_percent": 100},
            {"grade": "B", "min_percent": 50, "max_percent": 70},
        ])


@pytest.mark.parametrize(
    "band",
    [
        {"grade": "A", "min_percent": 80, "max_percent": 120},
        {"grade": "A", "min_percent": 90, "max_percent": 80},
        {"grade": "", "min_percent": 0, "max_percent": 100},
        {"grade": "A", "min_percent": "x", "max_percent": 100},
    ],
)
def test_validate_bands_rejects_bad_band(band):
    with pytest.raises(ValueError):
        grading.validate_bands([band])


def test_parse_bands_rejects_invalid_json():
    with pytest.raises(ValueError, match="JSON"):
        grading.parse_bands("{not json")


def test_grade_from_scale_falls_back_to_default_on_bad_bands():
    assert grading.grade_from_scale(85, "[]") == grading.default_grade(85)


def test_grade_below_every_band_gets_lowest_band():
    bands = [{"grade": "P", "min_percent": 50, "max_percent": 100}, {"grade": "F", "min_percent": 30, "max_percent": 49}]
    assert grading.grade_from_bands(10, bands)["grade"] == "F"


def test_competition_positions_share_ties_and_skip():
    positions = grading.competition_positions([("a", 90), ("b", 75), ("c", 90), ("d", 60), ("e", 75)])
    assert positions["a"] == 1
    assert positions["c"] == 1
    assert positions["b"] == 3
    assert positions["e"] == 3
    assert positions["d"] == 5


def test_competition_positions_treats_float_noise_as_tie():
    positions = grading.competition_positions([("a", 0.1 + 0.2), ("b", 0.3)])
    assert positions == {"a": 1, "b": 1}


@pytest.mark.parametrize("value,expected", [(1, "1st"), (2, "2nd"), (3, "3rd"), (4, "4th"), (11, "11th"), (12, "12th"),
                                            (13, "13th"), (21, "21st"), (112, "112th"), (None, "")])
def test_ordinal(value, expected):
    assert grading.ordinal(value) == expected
