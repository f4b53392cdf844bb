"""
Product Catalog - SKU Resolution
================================
Maps a shop SKU to a display name and product category. The category drives
LMN eligibility, so an SKU that cannot be resolved is reported as
"uncategorized" rather than guessed.

SKU shapes:
- NAME-DOSE-VOLUME            BPC157-10MG-03ML, IGF1LR3-.1MG-03ML
- GLP-1-<variant>-DOSE-VOLUME GLP-1-2T-10MG-03ML
- BLND-<blend>-DOSES-VOLUME   BLND-WOLVERINE-BPC157TB500-10X10MG-03ML
- WELLNESS-<name>             supplements
- BACWATER-30ML               accessory
"""

import re
from typing import NamedTuple, Optional


UNCATEGORIZED = "uncategorized"

ALL_CATEGORIES = (
    "growth_factor",
    "repair",
    "metabolic",
    "bioregulator",
    "neuropeptide",
    "immune",
    "hormonal",
    "blend",
    "wellness_supplement",
    "accessory",
)


class CatalogEntry(NamedTuple):
    sku: str
    name: str
    category: str


# SKU key -> (display name, category)
PEPTIDES: dict[str, tuple[str, str]] = {
    "5AMINO1MQ": ("5-Amino-1MQ", "metabolic"),
    "AOD9604": ("AOD-9604", "metabolic"),
    "ARA290": ("ARA-290", "neuropeptide"),
    "BACWATER": ("Bacteriostatic Water", "accessory"),
    "BPC157": ("BPC-157", "repair"),
    "CJC1295": ("CJC-1295 (No DAC)", "growth_factor"),
    "CJC1295WITHDAC": ("CJC-1295 with DAC", "growth_factor"),
    "DSIP": ("DSIP", "bioregulator"),
    "EPITHALON": ("Epitalon", "bioregulator"),
    "FOLLISTATIN": ("Follistatin", "growth_factor"),
    "GHKCU": ("GHK-Cu", "repair"),
    "GHRP2": ("GHRP-2", "growth_factor"),
    "GHRP6": ("GHRP-6", "growth_factor"),
    "GONADORELIN": ("Gonadorelin", "hormonal"),
    "HEXARELIN": ("Hexarelin", "growth_factor"),
    "IGF1LR3": ("IGF-1 LR3", "growth_factor"),
    "IPAMORELIN": ("Ipamorelin", "growth_factor"),
    "KISSPEPTIN": ("Kisspeptin-10", "hormonal"),
    "KPV": ("KPV", "immune"),
    "LC120": ("LC-120", "neuropeptide"),
    "LL37": ("LL-37", "immune"),
    "MGF": ("MGF", "growth_factor"),
    "MOTSC": ("MOTS-c", "metabolic"),
    "MELANOTAN1": ("Melanotan-1", "hormonal"),
    "MT2": ("Melanotan-2", "hormonal"),
    "MT2(MELANOTAN2ACETATE)": ("Melanotan-2", "hormonal"),
    "NAD+": ("NAD+", "bioregulator"),
    "OXYTOCIN": ("Oxytocin", "neuropeptide"),
    "PEGMGF": ("PEG-MGF", "growth_factor"),
    "PINEALON": ("Pinealon", "bioregulator"),
    "PT141": ("PT-141", "hormonal"),
    "SELANK": ("Selank", "neuropeptide"),
    "SEMAX": ("Semax", "neuropeptide"),
    "SERMORELIN": ("Sermorelin", "growth_factor"),
    "SNAP8": ("SNAP-8", "repair"),
    "SS31": ("SS-31 (Elamipretide)", "bioregulator"),
    "SLU-PP-332": ("SLU-PP-332", "metabolic"),
    "TB500": ("TB-500", "repair"),
    "TESAMORELIN": ("Tesamorelin", "growth_factor"),
    "THYMALIN": ("Thymalin", "immune"),
    "THYMOSINALPHA1": ("Thymosin Alpha-1", "immune"),
    "THYMULIN": ("Thymulin", "immune"),
    "VIP": ("VIP", "neuropeptide"),
}

GLP1_VARIANTS: dict[str, str] = {
    "GLP-1-C": "GLP-1 (Cagrilintide)",
    "GLP-1-1MZ": "GLP-1 (MZ)",
    "GLP-1-3R": "GLP-1 (Retatrutide)",
    "GLP-1-1S": "GLP-1 (Semaglutide)",
    "GLP-1-SV": "GLP-1 (SV)",
    "GLP-1-2T": "GLP-1 (Tirzepatide)",
}

# Longest prefix wins, so GLOW+ is listed next to GLOW and matched first.
BLENDS: dict[str, tuple[str, str]] = {
    "BLND-AOD9604CJC1295IPAMORELIN": ("AOD-9604 + CJC-1295 + Ipamorelin Blend", "blend"),
    "BLND-GLOW+BPC157GHKCUTB500": ("GLOW+ Blend (BPC-157 + GHK-Cu + TB-500)", "blend"),
    "BLND-GLOW-BPC157GHKCUTB500": ("GLOW Blend (BPC-157 + GHK-Cu + TB-500)", "blend"),
    "BLND-KLOW+BPC157GHKCUKPVTB500": ("KLOW+ Blend (BPC-157 + GHK-Cu + KPV + TB-500)", "blend"),
    "BLND-KLOW-BPC157GHKCUKPVTB500": ("KLOW Blend (BPC-157 + GHK-Cu + KPV + TB-500)", "blend"),
    "BLND-WOLVERINE-BPC157TB500": ("Wolverine Blend (BPC-157 + TB-500)", "blend"),
    "BLND-GLP-1-C1S": ("GLP-1 Blend (Cagrilintide + Semaglutide)", "metabolic"),
    "BLND-CJC1295WITHDAC": ("CJC-1295 with DAC", "growth_factor"),
    "BLND-CJC1295IPAMORELIN": ("CJC-1295 + Ipamorelin Blend", "growth_factor"),
    "BLND-IPAMORELINSERMORELIN": ("Ipamorelin + Sermorelin Blend", "growth_factor"),
    "BLND-SELANKSEMAX": ("Selank + Semax Blend", "neuropeptide"),
    "BLND-PT141KISSPEPTINPINEALON": ("PT-141 + Kisspeptin + Pinealon Blend", "hormonal"),
    "BLND-TESAMORELINIPAMORELIN": ("Tesamorelin + Ipamorelin Blend", "growth_factor"),
    "BLND-THYMOSINALPHA1THYMULIN": ("Thymosin Alpha-1 + Thymulin Blend", "immune"),
}

_GLP1_PATTERN = re.compile(r"^(GLP-1-[A-Z0-9]+)-(\d+(?:\.\d+)?)MG-(\d+)ML$", re.IGNORECASE)
_STANDARD_PATTERN = re.compile(r"^([A-Z0-9+()\-]+?)-(\.?\d+(?:\.\d+)?)MG-(\d+)ML$", re.IGNORECASE)
_VOLUME_ONLY_PATTERN = re.compile(r"^([A-Z0-9]+)-(\d+)ML$", re.IGNORECASE)
_BLEND_DOSE_PATTERN = re.compile(r"-(\d+(?:\.\d+)?)(?:X[\d.]+)*MG-\d+ML$", re.IGNORECASE)


def _format_dose(raw: str) -> str:
    if raw.startswith("."):
        raw = "0" + raw
    value = float(raw)
    return f"{value:g}"


def resolve_sku(sku: str) -> CatalogEntry:
    """Resolve an SKU to its catalog entry. Never raises."""
    normalized = sku.strip().upper()

    if normalized.startswith("WELLNESS-"):
        name = normalized[len("WELLNESS-"):].replace("-", " ").title()
        return CatalogEntry(sku, name, "wellness_supplement")

    if normalized.startswith("BLND-"):
        for prefix in sorted(BLENDS, key=len, reverse=True):
            if normalized.startswith(prefix):
                name, category = BLENDS[prefix]
                dose = _BLEND_DOSE_PATTERN.search(normalized)
                if dose:
                    name = f"{name} {_format_dose(dose.group(1))}mg"
                return CatalogEntry(sku, name, category)
        return CatalogEntry(sku, sku, UNCATEGORIZED)

    match = _GLP1_PATTERN.match(normalized)
    if match:
        display = GLP1_VARIANTS.get(match.group(1))
        if display is None:
            return CatalogEntry(sku, sku, UNCATEGORIZED)
        return CatalogEntry(sku, f"{display} {_format_dose(match.group(2))}mg", "metabolic")

    match = _STANDARD_PATTERN.match(normalized)
    if match and match.group(1) in PEPTIDES:
        display, category = PEPTIDES[match.group(1)]
        return CatalogEntry(sku, f"{display} {_format_dose(match.group(2))}mg", category)

    match = _VOLUME_ONLY_PATTERN.match(normalized)
    if match and match.group(1) in PEPTIDES:
        display, category = PEPTIDES[match.group(1)]
        return CatalogEntry(sku, f"{display} {match.group(2)}ml", category)

    return CatalogEntry(sku, sku, UNCATEGORIZED)


def resolve_category(sku: Optional[str], declared: Optional[str] = None) -> str:
    """Provider metadata wins when it names a known category."""
    if declared and declared in ALL_CATEGORIES:
        return declared
    if not sku:
        return UNCATEGORIZED
    return resolve_sku(sku).category
