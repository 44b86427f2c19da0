# Municipal FinSight - Public finance statement browser
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Entity catalog for Municipal FinSight.

Two JSON files describe which datasets exist:

- ``gdn-info.json``: one entry per municipality
      {"nr": "010002", "gemeinde": "Affoltern a.A.",
       "models": [{"model": "fs", "jahre": ["2021", "2022"]}]}
- ``std-info.json``: one entry per aggregated public-sector unit
      {"hh": "gdn_zh", "models": [{"model": "fs", "jahre": ["2022"]}]}

The catalog answers two questions for the integrator:

1. Is a (source, entity, model, year) combination available?
   (:meth:`EntityCatalog.validate`, returning a user-facing message.)
2. What should an entity be called in each language?
   (:meth:`EntityCatalog.display_name`, :meth:`EntityCatalog.description`.)

STD entity codes are compound (``gdn_zh``, ``ktn_be``, ``sv_ahv``,
``ktn_gdn_ag``); their names are derived from the canton and unit tables.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import pandas as pd

from .tree import make_labels

logger = logging.getLogger(__name__)

CANTONS_FILE = Path(__file__).resolve().parent / "data" / "cantons.csv"

GDN_INFO_FILE = "gdn-info.json"
STD_INFO_FILE = "std-info.json"

ENTITY_TYPES: dict[str, dict[str, str]] = {
    "bund": make_labels(
        "Bund (CH)",
        "Confédération (CH)",
        "Confederazione (CH)",
        "Federal Government (CH)",
    ),
    "ktn": make_labels("Kanton", "Canton", "Canton", "Canton"),
    "gdn": make_labels("Gemeinden", "Communes", "Comuni", "Municipalities"),
    "sv": make_labels(
        "Sozialversicherung (SV)",
        "Assurances sociales (AS)",
        "Assicurazioni sociali (AS)",
        "Social Insurance (SI)",
    ),
    "staat": make_labels("Staat", "État", "Stato", "State"),
}

SOCIAL_INSURANCE_TYPES: dict[str, dict[str, str]] = {
    "ahv": make_labels(
        "Alters- und Hinterlassenenversicherung (AHV)",
        "Assurance-vieillesse et survivants (AVS)",
        "Assicurazione vecchiaia e superstiti (AVS)",
        "Old Age and Survivors Insurance (AHV/AVS)",
    ),
    "alv": make_labels(
        "Arbeitslosenversicherung (ALV)",
        "Assurance-chômage (AC)",
        "Assicurazione contro la disoccupazione (AD)",
        "Unemployment Insurance (ALV)",
    ),
    "eo": make_labels(
        "Erwerbsersatzordnung (EO)",
        "Allocations pour perte de gain (APG)",
        "Indennità per perdita di guadagno (IPG)",
        "Income Compensation (EO/APG)",
    ),
}

_SOURCE_LABELS = {"gdn": "GDN", "std": "STD"}


def load_cantons(path: Union[str, Path] = CANTONS_FILE) -> dict[str, dict[str, str]]:
    """Load canton abbreviations with their four-language names."""
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    return {
        row.code.strip().lower(): make_labels(row.d, row.f, row.i, row.e)
        for row in df.itertuples(index=False)
    }


@dataclass
class CatalogEntry:
    """Availability of one entity: model -> available years."""

    entity_id: str
    source: str
    name: Optional[str] = None
    models: dict[str, list[str]] = field(default_factory=dict)


def _parse_entries(raw: Any, source: str, id_field: str) -> dict[str, CatalogEntry]:
    if not isinstance(raw, list):
        raise ValueError(f"Invalid {source} catalog, expected a JSON array.")

    entries: dict[str, CatalogEntry] = {}
    for item in raw:
        if not isinstance(item, dict) or id_field not in item:
            continue
        entity_id = str(item[id_field]).strip()
        models: dict[str, list[str]] = {}
        for m in item.get("models") or []:
            if not isinstance(m, dict) or "model" not in m:
                continue
            models[str(m["model"])] = [str(y) for y in m.get("jahre") or []]
        entries[entity_id] = CatalogEntry(
            entity_id=entity_id,
            source=source,
            name=item.get("gemeinde"),
            models=models,
        )
    return entries


class EntityCatalog:
    """Catalog of available GDN (municipal) and STD (aggregate) datasets."""

    def __init__(
        self,
        gdn: Optional[dict[str, CatalogEntry]] = None,
        std: Optional[dict[str, CatalogEntry]] = None,
        cantons: Optional[dict[str, dict[str, str]]] = None,
    ):
        self._entries = {"gdn": dict(gdn or {}), "std": dict(std or {})}
        self._cantons = cantons if cantons is not None else load_cantons()

    @classmethod
    def from_directory(cls, directory: Union[str, Path]) -> "EntityCatalog":
        """Load ``gdn-info.json`` and ``std-info.json`` from ``directory``.

        A missing file yields an empty section.
        """
        base = Path(directory)
        sections: dict[str, dict[str, CatalogEntry]] = {}
        for source, filename, id_field in (
            ("gdn", GDN_INFO_FILE, "nr"),
            ("std", STD_INFO_FILE, "hh"),
        ):
            path = base / filename
            if not path.is_file():
                logger.warning("Catalog file not found: %s", path)
                sections[source] = {}
                continue
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise ValueError(f"Failed to parse catalog file: {path}") from exc
            sections[source] = _parse_entries(raw, source, id_field)

        return cls(gdn=sections["gdn"], std=sections["std"])

    def get(self, source: str, entity_id: str) -> Optional[CatalogEntry]:
        return self._entries.get(source, {}).get(entity_id)

    def entity_ids(self, source: str) -> list[str]:
        return sorted(self._entries.get(source, {}))

    def available_years(self, source: str, entity_id: str, model: str) -> list[str]:
        entry = self.get(source, entity_id)
        if entry is None:
            return []
        return list(entry.models.get(model, []))

    def validate(
        self, source: str, entity_id: str, model: str, year: str
    ) -> Optional[str]:
        """Return None when the dataset is available, else an error message."""
        label = _SOURCE_LABELS.get(source, source.upper())
        entry = self.get(source, entity_id)
        if entry is None:
            return f"{label} entity '{entity_id}' not found"

        years = entry.models.get(model)
        if years is None:
            return f"Model '{model}' not available for {label} entity '{entity_id}'"

        if str(year) not in years:
            return (
                f"Year '{year}' not available for {label} entity '{entity_id}' "
                f"with model '{model}'. Available years: {', '.join(years)}"
            )
        return None

    # ------------------------------------------------------------------
    # Display names
    # ------------------------------------------------------------------

    def display_name(self, source: str, entity_id: str) -> dict[str, str]:
        if source == "gdn":
            entry = self.get("gdn", entity_id)
            name = entry.name if entry is not None and entry.name else entity_id
            return make_labels(name, name, name, name)
        return self._std_display_name(entity_id)

    def description(self, source: str, entity_id: str) -> dict[str, str]:
        if source == "gdn":
            entry = self.get("gdn", entity_id)
            if entry is not None and entry.name:
                suffix = f"{entry.name} ({entity_id})"
            else:
                suffix = entity_id
            return make_labels(
                f"Gemeinde {suffix}",
                f"Commune {suffix}",
                f"Comune {suffix}",
                f"Municipality {suffix}",
            )
        return self._std_display_name(entity_id)

    def _std_display_name(self, entity_id: str) -> dict[str, str]:
        parts = entity_id.lower().split("_")

        if parts == ["gdn"]:
            return make_labels(
                "Alle Gemeinden der Schweiz",
                "Toutes les communes de Suisse",
                "Tutti i comuni della Svizzera",
                "All Municipalities of Switzerland",
            )
        if parts == ["ktn"]:
            return make_labels(
                "Alle Kantone der Schweiz",
                "Tous les cantons de Suisse",
                "Tutti i cantoni della Svizzera",
                "All Cantons of Switzerland",
            )
        if len(parts) == 1 and parts[0] in ENTITY_TYPES:
            return dict(ENTITY_TYPES[parts[0]])

        if len(parts) == 2:
            kind, sub = parts
            canton = self._cantons.get(sub)
            if kind == "gdn" and canton:
                return make_labels(
                    f"Alle Gemeinden des Kantons {canton['de']}",
                    f"Toutes les communes du canton {canton['fr']}",
                    f"Tutti i comuni del cantone {canton['it']}",
                    f"All Municipalities of Canton {canton['en']}",
                )
            if kind == "ktn" and canton:
                base = ENTITY_TYPES["ktn"]
                return {lang: f"{base[lang]} {canton[lang]}" for lang in base}
            if kind == "sv" and sub in SOCIAL_INSURANCE_TYPES:
                return dict(SOCIAL_INSURANCE_TYPES[sub])

        if len(parts) == 3 and parts[:2] == ["ktn", "gdn"]:
            canton = self._cantons.get(parts[2])
            if canton:
                return make_labels(
                    f"Kanton {canton['de']} inklusive allen Gemeinden",
                    f"Canton {canton['fr']} incluant toutes les communes",
                    f"Cantone {canton['it']} inclusi tutti i comuni",
                    f"Canton {canton['en']} including all municipalities",
                )

        return make_labels(entity_id, entity_id, entity_id, entity_id)
