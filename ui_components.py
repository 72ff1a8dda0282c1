"""Reusable UI components for Streamlit HTML snippets."""

from __future__ import annotations

from html import escape
from typing import Sequence

import streamlit as st

# Colour per curve shape, shared by the regime card, charts and breakdown table
SHAPE_COLORS = {
    "steep-contango":      "#00c853",
    "contango":            "#69f0ae",
    "flat":                "#8b949e",
    "backwardation":       "#ffa657",
    "steep-backwardation": "#ff5252",
    "single-maturity":     "#58a6ff",
}


def shape_label(shape: str) -> str:
    return shape.replace("-", " ").title()


def metric_card(
    label: str,
    value: str,
    value_color: str = "",
    subtext: str | None = None,
    card_class: str = "summary-metric-card",
) -> str:
    value_style = f' style="color:{value_color};"' if value_color else ""
    html = (
        f'<div class="{card_class}">'
        f'<div class="summary-metric-label">{escape(str(label))}</div>'
        f'<div class="summary-metric-value"{value_style}>{escape(str(value))}</div>'
    )
    if subtext:
        html += f'<div class="summary-metric-sub">{escape(str(subtext))}</div>'
    html += "</div>"
    return html


def pill(text: str, color: str) -> str:
    return (
        f'<span class="regime-pill" style="color:{color};border-color:{color};">'
        f'{escape(str(text))}</span>'
    )


def section_title(text: str, margin_top_px: int = 0) -> str:
    style = f"margin-top:{margin_top_px}px;" if margin_top_px else ""
    return f'<p class="section-title" style="{style}">{escape(str(text))}</p>'


def legend(
    items: Sequence[tuple[str, str]] | None = None,
    wrapper_style: str = "display:flex;flex-wrap:wrap;gap:8px 10px;margin:6px 0 10px 0;",
) -> None:
    pairs = items or [(shape_label(s), c) for s, c in SHAPE_COLORS.items()]
    spans = []
    for label, color in pairs:
        spans.append(
            '<span style="background:#161b22;border:1px solid #30363d;'
            'border-radius:999px;padding:4px 10px;font-size:0.78rem;'
            f'color:{color};">{escape(label)}</span>'
        )
    st.markdown(f'<div style="{wrapper_style}">{"".join(spans)}</div>', unsafe_allow_html=True)
