"""Stage taxonomy -- external stage labels to canonical stages, plus the transition graph.

The taxonomy is immutable configuration data. DEFAULT_TAXONOMY is built once
at import time and injected into the validator, upsert engine and reconciler,
so a per-company taxonomy only needs a different StageTaxonomy instance.

Canonicalization is fail-open: an unrecognized upstream label maps to the
default stage ("new") and is flagged by the validator, never rejected.

Transitions outside the graph are legal. Deals get reopened and moved
backwards all the time, so the graph only drives an informational warning.
"""

from __future__ import annotations

import math

from pydantic import BaseModel, ConfigDict, Field

WON_STAGE = "won"
DEFAULT_STAGE = "new"


class StageTaxonomy(BaseModel):
    """Closed set of canonical stages and the rules around them.

    Attributes:
        stage_map: External label -> canonical stage.
        terminal_stages: Stages from which no further progress is expected.
        revenue_expected_stages: Active, revenue-bearing stages where a zero
            value is suspicious.
        transitions: Canonical stage -> explicitly allowed next stages.
        families: Groups of sibling stages that are mutually reachable
            regardless of the explicit graph.
        default_stage: Fallback for unknown labels.
        won_stage: The single terminal stage that means revenue was won.
    """

    model_config = ConfigDict(frozen=True)

    stage_map: dict[str, str]
    terminal_stages: frozenset[str]
    revenue_expected_stages: frozenset[str] = Field(default_factory=frozenset)
    transitions: dict[str, frozenset[str]] = Field(default_factory=dict)
    families: tuple[frozenset[str], ...] = ()
    default_stage: str = DEFAULT_STAGE
    won_stage: str = WON_STAGE

    # ── Lookups ─────────────────────────────────────────────────────────────

    @property
    def canonical_stages(self) -> frozenset[str]:
        return frozenset(self.stage_map.values()) | self.terminal_stages | {self.default_stage}

    @property
    def active_stages(self) -> frozenset[str]:
        return self.canonical_stages - self.terminal_stages

    def is_known(self, stage_label: str) -> bool:
        """True if the external label has an explicit mapping."""
        return stage_label in self.stage_map

    def canonicalize(self, stage_label: str) -> str:
        """Map an external label to its canonical stage (default if unknown)."""
        return self.stage_map.get(stage_label, self.default_stage)

    def is_terminal(self, stage: str) -> bool:
        return stage in self.terminal_stages

    def is_active(self, stage: str) -> bool:
        return not self.is_terminal(stage)

    def is_won(self, stage: str) -> bool:
        return stage == self.won_stage

    def expects_revenue(self, stage: str) -> bool:
        return stage in self.revenue_expected_stages

    # ── Transition graph ────────────────────────────────────────────────────

    def same_family(self, a: str, b: str) -> bool:
        """True if both stages belong to one sibling family."""
        return any(a in family and b in family for family in self.families)

    def family_of(self, stage: str) -> frozenset[str]:
        for family in self.families:
            if stage in family:
                return family
        return frozenset()

    def allowed_next_stages(self, stage: str) -> frozenset[str]:
        """Explicit graph edges plus same-family siblings."""
        explicit = self.transitions.get(stage, frozenset())
        return (explicit | self.family_of(stage)) - {stage}

    def is_unusual_transition(self, previous: str, new: str) -> bool:
        """True if ``previous -> new`` is outside the graph.

        Stages without an explicit edge set (terminal stages, the default
        stage of an unknown taxonomy) never produce an unusual transition.
        """
        if previous == new or previous not in self.transitions:
            return False
        return new not in self.allowed_next_stages(previous)

    # ── Probability ─────────────────────────────────────────────────────────

    def normalize_probability(self, stage: str, probability: float) -> int:
        """Won -> 100, other terminal -> 0, else rounded and clamped to 0..100."""
        if self.is_won(stage):
            return 100
        if self.is_terminal(stage):
            return 0
        rounded = math.floor(probability + 0.5)
        return max(0, min(100, rounded))


# ── Default taxonomy ────────────────────────────────────────────────────────

_ESTIMATION = frozenset(
    {"estimation_ben", "estimation_karthick", "estimation_others", "estimation_partha"}
)

_STAGE_MAP: dict[str, str] = {
    "New": "new",
    "Telephonic Enquiries": "telephonic_enquiries",
    "Qualified": "qualified",
    "RFI": "rfi",
    "Addendums": "addendums",
    "Estimation-Ben": "estimation_ben",
    "Estimation-Karthick(Mavericks)": "estimation_karthick",
    "Estimation-Others": "estimation_others",
    "Estimation Partha": "estimation_partha",
    "QC - Ben": "qc_ben",
    "Hot Enquiries": "hot_enquiries",
    "Quotation Priority": "quotation_priority",
    "Quotation Bids": "quotation_bids",
    "Shop Drawing": "shop_drawing",
    "Shop Drawing Sent for Approval": "shop_drawing_approval",
    "Fabrication In Shop": "fabrication_in_shop",
    "Ready To Dispatch/Pickup": "ready_to_dispatch",
    "Delivered/Pickup Done": "delivered_pickup_done",
    "Out for Delivery": "out_for_delivery",
    "Won": "won",
    "Loss": "loss",
    "Merged": "merged",
    "No rebars(Our of Scope)": "no_rebars_out_of_scope",
    "Temp: IR/VAM": "temp_ir_vam",
    "Migration-Others": "migration_others",
    "Dreamers": "dreamers",
    "Archived": "archived_orphan",
    "Orphan": "archived_orphan",
}

_TERMINAL = frozenset(
    {"won", "lost", "loss", "merged", "no_rebars_out_of_scope", "delivered_pickup_done"}
)

_REVENUE_EXPECTED = frozenset(
    {
        "quotation_priority",
        "quotation_bids",
        "shop_drawing",
        "shop_drawing_approval",
        "fabrication_in_shop",
        "ready_to_dispatch",
        "out_for_delivery",
        "won",
    }
)

_CLOSE_OUT = frozenset({"loss", "archived_orphan", "merged"})


def _edges(*stages: str, close_out: frozenset[str] = _CLOSE_OUT) -> frozenset[str]:
    return frozenset(stages) | close_out


_TRANSITIONS: dict[str, frozenset[str]] = {
    "new": _edges(
        "telephonic_enquiries", "qualified", "hot_enquiries", "dreamers", "no_rebars_out_of_scope"
    ),
    "telephonic_enquiries": _edges(
        "qualified", "hot_enquiries", "rfi", "no_rebars_out_of_scope", "dreamers"
    ),
    "qualified": _edges("rfi", "addendums", "hot_enquiries", "no_rebars_out_of_scope") | _ESTIMATION,
    "hot_enquiries": _edges("qualified", "rfi", "quotation_priority") | _ESTIMATION,
    "rfi": _edges("addendums", "qualified") | _ESTIMATION,
    "addendums": _edges("rfi") | _ESTIMATION,
    "estimation_ben": _edges("qc_ben", "quotation_priority"),
    "estimation_karthick": _edges("qc_ben", "quotation_priority"),
    "estimation_others": _edges("qc_ben", "quotation_priority"),
    "estimation_partha": _edges("qc_ben", "quotation_priority"),
    "qc_ben": _edges("quotation_priority", "quotation_bids") | _ESTIMATION,
    "quotation_priority": _edges("quotation_bids", "shop_drawing", "won"),
    "quotation_bids": _edges("quotation_priority", "shop_drawing", "won"),
    "shop_drawing": _edges("shop_drawing_approval"),
    "shop_drawing_approval": _edges("fabrication_in_shop", "shop_drawing"),
    "fabrication_in_shop": _edges(
        "ready_to_dispatch", close_out=frozenset({"loss", "archived_orphan"})
    ),
    "ready_to_dispatch": _edges(
        "out_for_delivery", "delivered_pickup_done", close_out=frozenset({"loss", "archived_orphan"})
    ),
    "out_for_delivery": _edges(
        "delivered_pickup_done", close_out=frozenset({"loss", "archived_orphan"})
    ),
    "delivered_pickup_done": frozenset({"won", "archived_orphan"}),
}

DEFAULT_TAXONOMY = StageTaxonomy(
    stage_map=_STAGE_MAP,
    terminal_stages=_TERMINAL,
    revenue_expected_stages=_REVENUE_EXPECTED,
    transitions=_TRANSITIONS,
    families=(_ESTIMATION,),
)
