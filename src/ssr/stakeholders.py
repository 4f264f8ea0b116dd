# File: src/ssr/stakeholders.py
"""
Predefined report audiences, in Japanese and English.

Ids are language-independent; the lexicons (role-specific terms, English
templates, dynamic-K ratios, query weights) are keyed on them.
"""

from __future__ import annotations

from typing import Literal

from ssr.contracts.schemas import Stakeholder, StakeholderKind

PREDEFINED_STAKEHOLDER_IDS = (
    "cxo",
    "technical-fellows",
    "architect",
    "business",
    "product",
    "r-and-d",
)


def _predefined(id: str, role: str, concerns: list[str]) -> Stakeholder:
    return Stakeholder(id=id, role=role, concerns=concerns, kind=StakeholderKind.PREDEFINED)


PREDEFINED_STAKEHOLDERS_JA: tuple[Stakeholder, ...] = (
    _predefined("cxo", "CxO / 経営層", [
        "戦略的整合性",
        "企業価値への影響",
        "リスク管理",
        "ステークホルダーへの説明責任",
    ]),
    _predefined("technical-fellows", "Technical Fellows / 技術専門家", [
        "技術的な卓越性",
        "ベストプラクティスの適用",
        "長期的な技術戦略",
        "技術的イノベーション",
    ]),
    _predefined("architect", "Architect / アーキテクト", [
        "システム設計の整合性",
        "スケーラビリティ",
        "技術的負債",
        "アーキテクチャの保守性",
    ]),
    _predefined("business", "Business Division / 事業部門", [
        "ビジネスインパクト",
        "ROIと収益性",
        "市場シェア",
        "事業リスク",
    ]),
    _predefined("product", "Product Division / 製品部門", [
        "製品の品質と安全性",
        "市場競争力",
        "ユーザビリティ",
        "製品化のタイムライン",
    ]),
    _predefined("r-and-d", "R&D Division / 研究開発部門", [
        "技術的な実現可能性",
        "開発リソースの効率性",
        "イノベーションの機会",
        "技術的リスクと課題",
    ]),
)

PREDEFINED_STAKEHOLDERS_EN: tuple[Stakeholder, ...] = (
    _predefined("cxo", "CxO / Executive", [
        "Strategic alignment",
        "Corporate value impact",
        "Risk management",
        "Stakeholder accountability",
    ]),
    _predefined("technical-fellows", "Technical Fellows", [
        "Technical excellence",
        "Best practice adoption",
        "Long-term tech strategy",
        "Technical innovation",
    ]),
    _predefined("architect", "Architect", [
        "System design integrity",
        "Scalability",
        "Technical debt",
        "Architecture maintainability",
    ]),
    _predefined("business", "Business Division", [
        "Business impact",
        "ROI and profitability",
        "Market share",
        "Business risk",
    ]),
    _predefined("product", "Product Division", [
        "Product quality and safety",
        "Market competitiveness",
        "Usability",
        "Product launch timeline",
    ]),
    _predefined("r-and-d", "R&D Division", [
        "Technical feasibility",
        "Development resource efficiency",
        "Innovation opportunities",
        "Technical risks and challenges",
    ]),
)


def get_predefined_stakeholders(language: Literal["ja", "en"] = "ja") -> tuple[Stakeholder, ...]:
    return PREDEFINED_STAKEHOLDERS_EN if language == "en" else PREDEFINED_STAKEHOLDERS_JA


def get_predefined_stakeholder(stakeholder_id: str, language: Literal["ja", "en"] = "ja") -> Stakeholder:
    for s in get_predefined_stakeholders(language):
        if s.id == stakeholder_id:
            return s
    raise KeyError(f"Unknown predefined stakeholder: {stakeholder_id!r}")
