"""Render an analysis record as the Markdown sidecar that accompanies an exported image."""

from datetime import UTC, date, datetime

from photo_renamer.models import ImageAnalysis

PLACEHOLDER = "—"


def today_utc() -> date:
    """Current calendar date in UTC."""
    return datetime.now(tz=UTC).date()


def _or_placeholder(value: str) -> str:
    return value or PLACEHOLDER


def format_metadata(
    file_name: str,
    analysis: ImageAnalysis,
    *,
    today: date | None = None,
) -> str:
    """
    Build the sidecar document for an exported image.

    The layout is fixed: file name heading, title, alt text, description, keywords,
    copyright/creator/rights placeholders, creation date and a location block. Empty values
    render as an em dash.

    Args:
        file_name: Resolved name of the exported image
        analysis: Analysis record, including any user edits
        today: Date to stamp as "Date Created"; defaults to the current UTC date

    Returns:
        The Markdown document text.

    """
    today = today or today_utc()
    keywords = ", ".join(analysis.keywords) if analysis.keywords else PLACEHOLDER
    location = ", ".join(analysis.location_parts) or PLACEHOLDER

    return f"""# {file_name}

## Title
{_or_placeholder(analysis.title)}

## Alt Text
{_or_placeholder(analysis.alt_text)}

## Description
{_or_placeholder(analysis.meta_description)}

## Keywords
{keywords}

## Copyright
<!-- Fill in: e.g. © {today.year} Your Company. All rights reserved. -->

## Creator
<!-- Fill in: e.g. Photography: Name | Edit: Design Team -->

## Date Created
{today.isoformat()}

## Web Statement of Rights
<!-- Fill in: e.g. https://example.com/image-licensing-terms -->

## Location
{location}

### Location Details
- **Location Name:** {_or_placeholder(analysis.location_name)}
- **City:** {_or_placeholder(analysis.city)}
- **State/Province:** {_or_placeholder(analysis.state_province)}
- **Country:** {_or_placeholder(analysis.country)}
"""
