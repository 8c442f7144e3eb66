"""Discrepancy classification.

Turns raw metric values and layout metadata into categorized,
severity-ranked findings.  Severity is a pure step function of the delta
magnitude over a fixed threshold table:

=================  ========  =========  ==========  ======
Signal             None      Low        Medium      High
=================  ========  =========  ==========  ======
ΔE00 (colour)      ≤ 1       1 – 2      2 – 3.5     > 3.5
Spacing (px)       ≤ 1       ≤ 4        ≤ 8         > 8
SSIM               ≥ 0.98    0.95–0.98  0.90–0.95   < 0.90
Pixel-diff (%)     ≤ tol     ≤ 2        ≤ 5         > 5
Font weight        0         ≤ 100      ≤ 200       > 200
Opacity            ≤ 0.02    ≤ 0.05     ≤ 0.10      > 0.10
=================  ========  =========  ==========  ======

Font size, line height, letter spacing, corner radius, border width and
shadow geometry use the spacing row; a font family mismatch is always High.

A region's pixel changes are attributed by comparing its foreground masks:
when the shapes differ the region gets Structure findings, when they agree
the change is explained by a colour finding if there is one, by a spacing
finding if there is one, and is otherwise reported as a rendering Effect.
Pixels outside every measured region are classified from their own SSIM
and pixel diff, so a change there is scored whatever else was found.
Findings for the same region are never merged.
"""

import math
import re

from fidelity.config import EngineConfig, SeverityThresholds
from fidelity.metrics import delta_e_ciede2000, is_gross_mismatch
from fidelity.models import (
    Category,
    Discrepancy,
    LayoutElement,
    MetricResult,
    Region,
    RegionMetrics,
    Severity,
)

# Layout properties and the threshold row each one is classified with.
TYPOGRAPHY_PROPERTIES = {
    "font_size": "spacing",
    "line_height": "spacing",
    "letter_spacing": "spacing",
    "font_weight": "font_weight",
    "font_family": "exact",
}
EFFECTS_PROPERTIES = {
    "corner_radius": "spacing",
    "border_width": "spacing",
    "shadow_blur": "spacing",
    "shadow_spread": "spacing",
    "shadow_offset_x": "spacing",
    "shadow_offset_y": "spacing",
    "opacity": "opacity",
}
COLOR_PROPERTIES = {"color", "background_color", "border_color", "shadow_color"}
SPACING_PREFIXES = ("margin", "padding", "gap", "x", "y", "width", "height")

FIX_CATEGORIES = {
    "ssim": "restructure-layout",
    "pixel_diff": "restructure-layout",
    "phash": "rebuild-screen",
    "offset": "adjust-position",
    "size": "adjust-size",
    "rendering": "adjust-effects",
    "background": "adjust-background-color",
    "delta_e": "adjust-color",
    "sample": "adjust-color",
    "font_size": "adjust-font-size",
    "line_height": "adjust-line-height",
    "letter_spacing": "adjust-letter-spacing",
    "font_weight": "adjust-font-weight",
    "font_family": "change-font-family",
    "corner_radius": "adjust-corner-radius",
    "border_width": "adjust-border",
    "opacity": "adjust-opacity",
}

_HEX_COLOR = re.compile(r"^#?([0-9a-fA-F]{6}|[0-9a-fA-F]{3})$")
_NUMBER = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*(?:px|pt)?\s*$")


def severity_for(value: float, thresholds: SeverityThresholds) -> Severity:
    """Map a value onto a severity tier.

    For lower-is-better rows the absolute value is used, so a shift of
    -12 px is as severe as one of +12 px.

    Args:
        value: Measured delta (or similarity for higher-is-better rows).
        thresholds: Tier boundaries.

    Returns:
        Severity tier; a larger delta never yields a lower tier.
    """
    if math.isnan(value):
        return Severity.HIGH

    if thresholds.higher_is_better:
        if value >= thresholds.none:
            return Severity.NONE
        if value >= thresholds.low:
            return Severity.LOW
        if value >= thresholds.medium:
            return Severity.MEDIUM
        return Severity.HIGH

    magnitude = abs(value)
    if magnitude <= thresholds.none:
        return Severity.NONE
    if magnitude <= thresholds.low:
        return Severity.LOW
    if magnitude <= thresholds.medium:
        return Severity.MEDIUM
    return Severity.HIGH


def fix_category_for(signal: str) -> str:
    """Suggested kind of fix for a signal; never literal code."""
    if signal in FIX_CATEGORIES:
        return FIX_CATEGORIES[signal]
    if signal.startswith("shadow"):
        return "adjust-shadow"
    if signal.endswith("color"):
        return "adjust-color"
    if signal.startswith(SPACING_PREFIXES):
        return "adjust-spacing"
    return "review-manually"


def parse_hex_color(value: str) -> tuple[int, int, int]:
    """Parse ``#rrggbb`` or ``#rgb`` into an RGB triple.

    Raises:
        ValueError: If the value is not a hex colour.
    """
    match = _HEX_COLOR.match(value.strip())
    if not match:
        msg = f"Not a hex colour: {value!r}"
        raise ValueError(msg)
    digits = match.group(1)
    if len(digits) == 3:
        digits = "".join(c * 2 for c in digits)
    return int(digits[0:2], 16), int(digits[2:4], 16), int(digits[4:6], 16)


def _as_number(name: str, value: float | str) -> float:
    if isinstance(value, bool):
        msg = f"Layout property {name!r} must be numeric, got {value!r}"
        raise ValueError(msg)
    if isinstance(value, int | float):
        return float(value)
    match = _NUMBER.match(str(value))
    if not match:
        msg = f"Layout property {name!r} must be numeric, got {value!r}"
        raise ValueError(msg)
    return float(match.group(1))


def _finding(
    category: Category,
    severity: Severity,
    signal: str,
    measured: float | str | None,
    expected: float | str | None,
    delta: float,
    region: Region | None,
    description: str,
    fix_category: str | None = None,
) -> Discrepancy:
    return Discrepancy(
        category=category,
        severity=severity,
        signal=signal,
        measured=measured,
        expected=expected,
        delta=float(delta),
        region=region,
        fix_category=fix_category or fix_category_for(signal),
        description=description,
    )


def classify_region(
    rm: RegionMetrics,
    region: Region | None,
    config: EngineConfig | None = None,
) -> list[Discrepancy]:
    """Classify the measurements of one region.

    Args:
        rm: Region measurements.
        region: Region box attached to every finding.
        config: Thresholds and mask tolerance.

    Returns:
        Findings for the region, one per signal that reached Low or worse.
    """
    config = config or EngineConfig()
    th = config.thresholds
    box = region.without_pixels() if region is not None else None
    where = f"region {rm.label!r}"
    findings: list[Discrepancy] = []

    if rm.design_coverage > 0 and rm.implementation_coverage == 0:
        findings.append(
            _finding(
                Category.STRUCTURE, Severity.HIGH, "presence", "absent", "present", 1.0, box,
                f"Element in {where} is missing from the implementation",
                fix_category="add-missing-element",
            )
        )
    elif rm.design_coverage == 0 and rm.implementation_coverage > 0:
        findings.append(
            _finding(
                Category.STRUCTURE, Severity.HIGH, "presence", "present", "absent", 1.0, box,
                f"Implementation shows an element in {where} that the design does not have",
                fix_category="remove-extra-element",
            )
        )

    color_found = False
    if rm.delta_e is not None:
        sev = severity_for(rm.delta_e, th.color)
        if sev is not Severity.NONE:
            color_found = True
            findings.append(
                _finding(
                    Category.COLOR, sev, "delta_e", round(rm.delta_e, 4), 0.0, rm.delta_e, box,
                    f"Average colour in {where} differs by ΔE00 {rm.delta_e:.2f}",
                )
            )

    spacing_found = False
    if rm.offset_x is not None and rm.offset_y is not None:
        shift = max(abs(rm.offset_x), abs(rm.offset_y))
        sev = severity_for(shift, th.spacing)
        if sev is not Severity.NONE:
            spacing_found = True
            findings.append(
                _finding(
                    Category.SPACING, sev, "offset", f"{rm.offset_x:+d},{rm.offset_y:+d}", "+0,+0",
                    shift, box,
                    f"Content in {where} is shifted by ({rm.offset_x:+d}, {rm.offset_y:+d}) px",
                )
            )
    if rm.width_delta is not None and rm.height_delta is not None:
        growth = max(abs(rm.width_delta), abs(rm.height_delta))
        sev = severity_for(growth, th.spacing)
        if sev is not Severity.NONE:
            spacing_found = True
            findings.append(
                _finding(
                    Category.SPACING, sev, "size",
                    f"{rm.width_delta:+d},{rm.height_delta:+d}", "+0,+0", growth, box,
                    f"Content in {where} changed size by "
                    f"({rm.width_delta:+d}, {rm.height_delta:+d}) px",
                )
            )

    ssim_sev = severity_for(rm.ssim, th.ssim)
    diff_sev = severity_for(rm.pixel_diff_percent, th.pixel_diff)
    if rm.mask_mismatch > config.metrics.mask_tolerance:
        if ssim_sev is not Severity.NONE:
            findings.append(
                _finding(
                    Category.STRUCTURE, ssim_sev, "ssim", round(rm.ssim, 6), 1.0, 1.0 - rm.ssim,
                    box, f"Shapes in {where} differ (SSIM {rm.ssim:.3f})",
                )
            )
        if diff_sev is not Severity.NONE:
            findings.append(
                _finding(
                    Category.STRUCTURE, diff_sev, "pixel_diff", round(rm.pixel_diff_percent, 4),
                    0.0, rm.pixel_diff_percent, box,
                    f"{rm.pixel_diff_percent:.1f}% of the pixels in {where} differ",
                )
            )
    elif not color_found and not spacing_found:
        sev = Severity.worst([ssim_sev, diff_sev])
        if sev is not Severity.NONE:
            findings.append(
                _finding(
                    Category.EFFECTS, sev, "rendering", round(rm.ssim, 6), 1.0, 1.0 - rm.ssim, box,
                    f"Rendering in {where} differs while shapes and colours match "
                    f"(SSIM {rm.ssim:.3f})",
                )
            )

    return findings


def classify_layout(
    elements: list[LayoutElement],
    config: EngineConfig | None = None,
) -> list[Discrepancy]:
    """Classify layout and font metadata.

    Properties present in ``expected`` but missing from ``measured`` are
    not compared.  Unknown properties are ignored.

    Raises:
        ValueError: If a value cannot be interpreted for its property.
    """
    config = config or EngineConfig()
    th = config.thresholds
    rows = {"spacing": th.spacing, "font_weight": th.font_weight, "opacity": th.opacity}
    findings: list[Discrepancy] = []

    for element in elements:
        for name, expected in element.expected.items():
            if name not in element.measured:
                continue
            measured = element.measured[name]
            where = f"element {element.label!r}"

            if name in COLOR_PROPERTIES:
                rgb_expected = parse_hex_color(str(expected))
                rgb_measured = parse_hex_color(str(measured))
                de = float(delta_e_ciede2000([rgb_expected], [rgb_measured])[0])
                sev = severity_for(de, th.color)
                if sev is not Severity.NONE:
                    findings.append(
                        _finding(
                            Category.COLOR, sev, name, str(measured), str(expected), de,
                            element.region, f"{name} of {where} differs by ΔE00 {de:.2f}",
                        )
                    )
                continue

            if name in TYPOGRAPHY_PROPERTIES:
                category, row = Category.TYPOGRAPHY, TYPOGRAPHY_PROPERTIES[name]
            elif name in EFFECTS_PROPERTIES:
                category, row = Category.EFFECTS, EFFECTS_PROPERTIES[name]
            elif name.startswith(SPACING_PREFIXES):
                category, row = Category.SPACING, "spacing"
            else:
                continue

            if row == "exact":
                if str(measured).strip().lower() != str(expected).strip().lower():
                    findings.append(
                        _finding(
                            category, Severity.HIGH, name, str(measured), str(expected), 1.0,
                            element.region,
                            f"{name} of {where} is {measured!r} instead of {expected!r}",
                        )
                    )
                continue

            value = _as_number(name, measured)
            target = _as_number(name, expected)
            delta = value - target
            sev = severity_for(delta, rows[row])
            if sev is not Severity.NONE:
                findings.append(
                    _finding(
                        category, sev, name, value, target, abs(delta), element.region,
                        f"{name} of {where} is {value:g} instead of {target:g}",
                    )
                )

    return findings


def classify(
    metrics: MetricResult,
    regions: list[Region],
    layout: list[LayoutElement] | None = None,
    config: EngineConfig | None = None,
) -> list[Discrepancy]:
    """Classify a metric result into findings.

    Args:
        metrics: Metric values for the image pair.
        regions: Regions that were measured (matched to
            ``metrics.regions`` by label).
        layout: Optional layout and font metadata.
        config: Thresholds and tolerances.

    Returns:
        Every finding of Low severity or worse, in detection order.
    """
    config = config or EngineConfig()
    th = config.thresholds
    findings: list[Discrepancy] = []

    if is_gross_mismatch(metrics.phash_distance, metrics.ssim, config.metrics):
        findings.append(
            _finding(
                Category.STRUCTURE, Severity.HIGH, "phash", metrics.phash_distance,
                0, metrics.phash_distance, None,
                f"Perceptual hashes differ in {metrics.phash_distance} bits; "
                "the screens are grossly different",
            )
        )

    background = metrics.color_delta_e.get("background")
    if background is not None:
        sev = severity_for(background, th.color)
        if sev is not Severity.NONE:
            findings.append(
                _finding(
                    Category.COLOR, sev, "background", round(background, 4), 0.0, background,
                    None, f"Background colour differs by ΔE00 {background:.2f}",
                )
            )

    for sample_id, value in metrics.color_delta_e.items():
        if sample_id == "background" or sample_id.startswith("region:"):
            continue
        sev = severity_for(value, th.color)
        if sev is not Severity.NONE:
            findings.append(
                _finding(
                    Category.COLOR, sev, "sample", round(value, 4), 0.0, value, None,
                    f"Colour sample {sample_id!r} differs by ΔE00 {value:.2f}",
                )
            )

    by_label = {region.label: region for region in regions}
    for label, rm in metrics.regions.items():
        findings.extend(classify_region(rm, by_label.get(label), config))

    if layout:
        findings.extend(classify_layout(layout, config))

    findings.extend(classify_uncovered(metrics, findings, config))
    return findings


def classify_uncovered(
    metrics: MetricResult,
    findings: list[Discrepancy],
    config: EngineConfig | None = None,
) -> list[Discrepancy]:
    """Classify the pixels outside every measured region.

    The uncovered area gets image-wide Structure findings from its own SSIM
    and pixel diff.  Its change is only left to colour when the foreground
    shapes agree there and a background colour finding exists; no other
    finding, inside a region or from layout metadata, can account for it.

    Args:
        metrics: Metric values; ``uncovered_*`` fall back to the image-wide
            values when missing.
        findings: Findings raised so far.
        config: Thresholds and tolerances.

    Returns:
        Zero, one or two Structure findings with no region.
    """
    config = config or EngineConfig()
    th = config.thresholds

    ssim = metrics.uncovered_ssim if metrics.uncovered_ssim is not None else metrics.ssim
    diff = (
        metrics.uncovered_pixel_diff_percent
        if metrics.uncovered_pixel_diff_percent is not None
        else metrics.pixel_diff_percent
    )
    mismatch = metrics.uncovered_mask_mismatch or 0.0
    if mismatch <= config.metrics.mask_tolerance and any(
        f.signal == "background" for f in findings
    ):
        return []

    where = "outside the measured regions" if metrics.regions else "across the screen"
    uncovered = []
    ssim_sev = severity_for(ssim, th.ssim)
    if ssim_sev is not Severity.NONE:
        uncovered.append(
            _finding(
                Category.STRUCTURE, ssim_sev, "ssim", round(ssim, 6), 1.0, 1.0 - ssim, None,
                f"Screens differ structurally {where} (SSIM {ssim:.3f})",
            )
        )
    diff_sev = severity_for(diff, th.pixel_diff)
    if diff_sev is not Severity.NONE:
        uncovered.append(
            _finding(
                Category.STRUCTURE, diff_sev, "pixel_diff", round(diff, 4), 0.0, diff, None,
                f"{diff:.1f}% of the pixels {where} differ",
            )
        )
    return uncovered
