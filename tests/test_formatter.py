"""Tests for the Markdown sidecar layout."""

from datetime import date

import pytest

import photo_renamer.formatter as f
from photo_renamer.formatter import PLACEHOLDER, format_metadata
from photo_renamer.models import ImageAnalysis

TODAY = date(2024, 3, 9)


def test_format_metadata_renders_all_sections() -> None:
    """Filled fields appear in their sections with keywords comma-joined in order."""
    analysis = ImageAnalysis(
        descriptive_name="red-fox-in-snow",
        title="Red Fox in Snow",
        alt_text="A red fox standing in fresh snow.",
        meta_description="Red fox in a snowy forest, ideal for winter wildlife stories.",
        keywords=["fox", "snow", "winter"],
        location_name="Hallerbos",
        city="Halle",
        state_province="Flemish Brabant",
        country="Belgium",
    )

    text = format_metadata("blog-red-fox-in-snow.jpg", analysis, today=TODAY)

    assert text.startswith("# blog-red-fox-in-snow.jpg\n\n## Title\nRed Fox in Snow\n")
    assert "## Alt Text\nA red fox standing in fresh snow.\n" in text
    assert "## Description\nRed fox in a snowy forest" in text
    assert "## Keywords\nfox, snow, winter\n" in text
    assert "© 2024 Your Company" in text
    assert "## Creator\n<!-- Fill in:" in text
    assert "## Date Created\n2024-03-09\n" in text
    assert "## Web Statement of Rights\n<!-- Fill in:" in text
    assert "## Location\nHallerbos, Halle, Flemish Brabant, Belgium\n" in text
    assert "- **State/Province:** Flemish Brabant\n" in text
    assert text.endswith("- **Country:** Belgium\n")


def test_format_metadata_uses_placeholders_for_empty_fields() -> None:
    """Empty values and an empty location render as an em dash."""
    text = format_metadata("x.png", ImageAnalysis(descriptive_name="x"), today=TODAY)

    assert f"## Title\n{PLACEHOLDER}\n" in text
    assert f"## Keywords\n{PLACEHOLDER}\n" in text
    assert f"## Location\n{PLACEHOLDER}\n" in text
    assert f"- **City:** {PLACEHOLDER}\n" in text


def test_format_metadata_location_skips_missing_parts() -> None:
    """Only filled location parts are joined."""
    analysis = ImageAnalysis(descriptive_name="x", city="Kyoto", country="Japan")
    text = format_metadata("x.jpg", analysis, today=TODAY)
    assert "## Location\nKyoto, Japan\n" in text
    assert f"- **Location Name:** {PLACEHOLDER}\n" in text


def test_format_metadata_defaults_to_current_date(monkeypatch: pytest.MonkeyPatch) -> None:
    """Without an explicit date the current UTC date is stamped."""
    monkeypatch.setattr(f, "today_utc", lambda: date(2030, 1, 2))
    text = f.format_metadata("x.jpg", ImageAnalysis(descriptive_name="x"))
    assert "## Date Created\n2030-01-02\n" in text
