# File: src/ssr/query/lexicons.py
"""
Bilingual lexicons used by query enhancement and stakeholder classification.

All tables are read-only (MappingProxyType / tuples) and bundled into one
frozen `Lexicons` value. `DEFAULT_LEXICONS` is built once at import time and
passed by reference into the enhancer and classifiers; tests construct
smaller fixture lexicons with `Lexicons(...)` or `DEFAULT_LEXICONS.replace(...)`.

Table groups:
  Roles      EN→JA role titles, role synonyms (JA/EN), JA role→EN,
              per-stakeholder English templates, role-specific terms
  Concerns   abstract→concrete phrases, concern synonyms (JA/EN),
              EN→JA concern translations, JA concern keywords→EN
  Fields     business-function terms (JA/EN), English templates,
              detection keywords, field synonyms, seniority keywords
  Priority   keywords used to rank concerns (JA hits count double)
  Triggers   concern keywords that pull in canned JA/EN queries
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping


def _frozen(table: dict) -> Mapping:
    """Wrap a dict (and any list values) as read-only."""
    return MappingProxyType({
        k: tuple(v) if isinstance(v, list) else v
        for k, v in table.items()
    })


def _table(mapping: Mapping):
    return field(default_factory=lambda: mapping)


# ── Roles ─────────────────────────────────────────────────────────────────────

COMMON_ROLE_TRANSLATIONS = _frozen({
    "ceo": "CEO",
    "cto": "CTO",
    "cfo": "CFO",
    "product manager": "プロダクトマネージャー",
    "project manager": "プロジェクトマネージャー",
    "security team": "セキュリティチーム",
    "quality assurance": "品質保証",
    "qa team": "QAチーム",
    "devops": "DevOps",
    "sales": "営業",
    "marketing": "マーケティング",
    "engineering": "エンジニアリング",
    "development": "開発",
    "developer": "開発者",
    "r&d": "研究開発",
    "hr": "人事",
    "legal": "法務",
    "finance": "財務",
})

ROLE_SYNONYMS_JA = _frozen({
    "経営層": ["経営", "役員", "マネジメント", "経営陣"],
    "技術専門家": ["技術者", "エンジニア", "テクニカル", "技術担当"],
    "アーキテクト": ["設計者", "システム設計", "アーキテクチャ"],
    "事業部門": ["ビジネス", "営業", "事業"],
    "製品部門": ["プロダクト", "製品開発", "商品"],
    "研究開発部門": ["R&D", "研究", "開発", "イノベーション"],
})

ROLE_SYNONYMS_EN = _frozen({
    "product manager": ["PM", "product owner", "product lead"],
    "engineering manager": ["EM", "tech lead", "engineering lead"],
    "security": ["cybersecurity", "infosec", "security team"],
    "quality assurance": ["QA", "testing", "quality control"],
    "developer": ["engineer", "programmer", "developer"],
    "devops": ["DevOps engineer", "infrastructure", "SRE"],
})

ROLE_TO_ENGLISH = _frozen({
    "経営層": "executive management",
    "技術専門家": "technical expert",
    "アーキテクト": "system architect",
    "事業部門": "business division",
    "製品部門": "product team",
    "研究開発部門": "R&D",
})

ENGLISH_QUERY_TEMPLATES = _frozen({
    "cxo": "risk management cost ROI governance strategy",
    "technical-fellows": "technical quality architecture design review standard",
    "architect": "system architecture design ADR component interface",
    "business": "business risk cost revenue ROI budget",
    "product": "product quality safety requirements verification test",
    "r-and-d": "technical verification implementation development issue risk",
})

ROLE_SPECIFIC_TERMS = _frozen({
    "cxo": ["経営判断", "コスト", "予算", "進捗", "承認", "マイルストーン"],
    "technical-fellows": ["技術評価", "設計判断", "技術レビュー", "品質基準", "技術方針"],
    "architect": ["設計", "構成", "モジュール", "インターフェース", "ADR", "依存関係"],
    "business": ["収益", "コスト削減", "市場影響", "ビジネスリスク", "投資", "予算"],
    "product": ["品質", "安全性", "要件", "機能", "リリース", "検証", "テスト"],
    "r-and-d": ["技術検証", "実装", "開発課題", "技術評価", "検証結果", "課題", "オープンイシュー"],
})

# Stakeholder kinds that also get the GSN / assurance-case query
ASSURANCE_CASE_STAKEHOLDERS = frozenset({"technical-fellows", "architect", "r-and-d"})
ASSURANCE_CASE_QUERY_PREFIX = "GSN アシュアランスケース"


# ── Concerns ──────────────────────────────────────────────────────────────────

CONCERN_CONCRETIZATION = _frozen({
    # R&D
    "技術的な実現可能性": "技術検証 実装可能性",
    "開発リソースの効率性": "開発工数 リソース配分",
    "イノベーションの機会": "技術改善 新技術",
    "技術的リスクと課題": "技術課題 技術リスク",
    # Technical Fellows
    "技術的な卓越性": "技術品質 設計品質",
    "ベストプラクティスの適用": "標準準拠 業界標準",
    "長期的な技術戦略": "技術方針 技術選定",
    "技術的イノベーション": "技術改善 最適化",
    # CxO
    "戦略的整合性": "経営方針 事業戦略",
    "企業価値への影響": "コスト ROI 投資対効果",
    "ステークホルダーへの説明責任": "報告 承認 意思決定",
    # Architect
    "システム設計の整合性": "設計整合性 アーキテクチャ",
    "アーキテクチャの保守性": "保守性 メンテナンス",
    # Business
    "ビジネスインパクト": "事業影響 ビジネス価値",
    "ROIと収益性": "ROI 収益 コスト",
    "事業リスク": "事業リスク ビジネスリスク",
    # Product
    "製品の品質と安全性": "製品品質 安全性 品質保証",
    "市場競争力": "競争力 差別化 市場価値",
    "ユーザビリティ": "使いやすさ UX ユーザー体験",
    "製品化のタイムライン": "リリース スケジュール マイルストーン",
})

CONCERN_SYNONYMS_JA = _frozen({
    # risk
    "リスク管理": ["リスク", "ハザード", "危険", "リスク対策", "リスク低減"],
    "リスク": ["ハザード", "危険", "脅威", "課題"],
    # safety
    "安全": ["セーフティ", "安全性", "安全要件", "ASIL"],
    "安全性": ["セーフティ", "安全", "安全要件"],
    # quality
    "品質": ["クオリティ", "QA", "品質保証", "検証"],
    "検証": ["テスト", "妥当性確認", "バリデーション", "評価"],
    # cost
    "コスト": ["費用", "予算", "見積", "工数"],
    "ROI": ["投資対効果", "費用対効果", "投資回収"],
    # design
    "設計": ["アーキテクチャ", "構成", "構造", "ADR"],
    "アーキテクチャ": ["設計", "システム構成", "構造"],
    # requirements
    "要件": ["仕様", "要求", "スペック"],
    "機能": ["機能要件", "FR", "機能仕様"],
    # issues
    "課題": ["問題", "イシュー", "オープンイシュー", "ブロッカー"],
    "技術課題": ["技術的問題", "実装課題", "技術リスク"],
    # schedule
    "進捗": ["ステータス", "状況", "進行状況"],
    "スケジュール": ["日程", "タイムライン", "期限", "マイルストーン"],
    # technical
    "技術": ["テクノロジー", "技術的", "実装"],
    "実装": ["開発", "実現", "構築"],
    "イノベーション": ["技術革新", "改善", "刷新"],
})

CONCERN_SYNONYMS_EN = _frozen({
    "cost": ["budget", "expense", "spending"],
    "quality": ["QA", "excellence", "standard"],
    "risk": ["hazard", "threat", "vulnerability"],
    "safety": ["security", "protection", "safe"],
    "performance": ["efficiency", "speed", "optimization"],
})

CONCERN_TRANSLATIONS = _frozen({
    "cost reduction": "コスト削減",
    "cost": "コスト",
    "quality improvement": "品質向上",
    "quality": "品質",
    "risk management": "リスク管理",
    "risk": "リスク",
    "safety": "安全",
    "security": "セキュリティ",
    "performance": "パフォーマンス",
    "efficiency": "効率",
    "customer satisfaction": "顧客満足",
    "compliance": "コンプライアンス",
    "schedule": "スケジュール",
    "deadline": "納期",
    "budget": "予算",
    "innovation": "イノベーション",
    "scalability": "スケーラビリティ",
    "reliability": "信頼性",
    "user experience": "ユーザー体験",
    "ux": "UX",
    "automation": "自動化",
    "optimization": "最適化",
    "productivity": "生産性",
    "maintenance": "保守",
    "monitoring": "監視",
    "deployment": "デプロイメント",
    "integration": "統合",
    "testing": "テスト",
    "documentation": "ドキュメント",
})

CONCERN_KEYWORDS_TO_ENGLISH = _frozen({
    "リスク": "risk",
    "安全": "safety",
    "品質": "quality",
    "コスト": "cost",
    "効率": "efficiency",
    "技術": "technical",
    "設計": "design",
    "検証": "verification",
    "テスト": "testing",
    "開発": "development",
    "管理": "management",
    "戦略": "strategy",
    "課題": "issue",
    "要件": "requirements",
    "進捗": "progress",
    "スケジュール": "schedule",
})

# Upper bound on keywords pulled into the derived English query
MAX_ENGLISH_FALLBACK_TERMS = 5
ENGLISH_LAST_RESORT_QUERY = "safety risk quality management"


# ── Business-function fields (custom stakeholders) ────────────────────────────

FIELD_TERMS_JA = _frozen({
    "quality": ["品質保証", "テスト", "バグ", "不具合", "QA", "検証"],
    "security": ["セキュリティ", "脆弱性", "攻撃", "防御", "ゼロトラスト"],
    "sales": ["売上", "営業戦略", "顧客", "提案", "契約"],
    "marketing": ["マーケティング", "ブランド", "プロモーション", "市場分析"],
    "finance": ["予算", "コスト", "ROI", "財務", "投資"],
    "legal": ["コンプライアンス", "法令", "規制", "リーガル"],
    "hr": ["人材", "採用", "育成", "評価", "組織"],
    "manufacturing": ["製造", "生産性", "品質管理", "工程", "効率化"],
    "customer": ["顧客満足", "カスタマーサポート", "CS", "CX"],
    "data": ["データ分析", "BI", "データガバナンス", "KPI"],
    "project": ["プロジェクト管理", "スケジュール", "リソース", "PMO"],
    "devops": ["CI/CD", "インフラ", "デプロイ", "自動化"],
    "development": ["開発", "プログラミング", "コード", "実装"],
})

FIELD_TERMS_EN = _frozen({
    "quality": ["QA", "testing", "quality assurance", "validation"],
    "security": ["security", "vulnerability", "threat", "cybersecurity"],
    "sales": ["sales", "revenue", "customer", "deal"],
    "marketing": ["marketing", "brand", "campaign", "market analysis"],
    "finance": ["budget", "cost", "ROI", "financial"],
    "legal": ["compliance", "regulatory", "governance", "legal"],
    "hr": ["HR", "talent", "recruitment", "performance"],
    "manufacturing": ["manufacturing", "production", "quality control"],
    "customer": ["customer satisfaction", "support", "CX"],
    "data": ["data analytics", "BI", "insights", "metrics"],
    "project": ["project management", "schedule", "resources"],
    "devops": ["CI/CD", "infrastructure", "deployment", "automation"],
    "development": ["development", "programming", "code", "implementation"],
})

FIELD_ENGLISH_TEMPLATES = _frozen({
    "quality": "quality assurance testing verification QA",
    "security": "security vulnerability risk protection",
    "sales": "sales revenue customer business",
    "marketing": "marketing brand promotion market",
    "finance": "cost budget ROI financial investment",
    "legal": "compliance regulatory governance legal",
    "hr": "human resources talent recruitment",
    "manufacturing": "manufacturing production quality efficiency",
    "customer": "customer satisfaction support CX",
    "data": "data analytics insights metrics KPI",
    "project": "project management schedule resources",
    "devops": "DevOps CI/CD infrastructure automation",
    "development": "development implementation technical engineering",
})

# Checked in order; first field with a matching fragment wins
FIELD_DETECTION_KEYWORDS = _frozen({
    "quality": ["品質", "qa"],
    "security": ["セキュリティ", "security"],
    "sales": ["営業", "sales"],
    "marketing": ["マーケティング", "marketing"],
    "finance": ["財務", "経理", "finance"],
    "legal": ["法務", "コンプライアンス", "legal"],
    "hr": ["人事", "hr", "human resource"],
    "manufacturing": ["製造", "生産", "manufacturing"],
    "customer": ["カスタマー", "顧客", "customer"],
    "data": ["データ", "分析", "data", "analytics"],
    "project": ["プロジェクト", "pm", "project"],
    "devops": ["devops", "インフラ", "infrastructure"],
    "development": ["開発", "development", "engineer"],
})

FIELD_SYNONYMS = _frozen({
    "quality": ["品質", "QA", "テスト", "testing"],
    "security": ["セキュリティ", "security", "防御"],
    "sales": ["営業", "セールス", "sales"],
    "development": ["開発", "dev", "engineering"],
})

LEVEL_KEYWORDS = _frozen({
    "manager": ["部長", "マネージャー", "manager"],
    "leader": ["リーダー", "主任", "lead"],
    "staff": ["担当", "スタッフ", "staff"],
})


# ── Role categories (weighting / dynamic-K for custom stakeholders) ───────────

# Predefined stakeholder id → category
PREDEFINED_CATEGORIES = _frozen({
    "cxo": "executive",
    "business": "executive",
    "product": "product",
    "technical-fellows": "technical",
    "architect": "technical",
    "r-and-d": "technical",
})

# Custom stakeholders: fragments matched against lowercased role + id.
# Checked in order technical → executive → risk; no hit → general.
CATEGORY_KEYWORDS = _frozen({
    "technical": [
        "技術", "開発", "エンジニア", "研究", "アーキテクト",
        "engineer", "developer", "architect", "tech", "r-and-d", "r&d",
    ],
    "executive": [
        "経営", "役員", "営業",
        "cxo", "executive", "exec", "ceo", "cto", "cfo", "business",
    ],
    "risk": [
        "リスク", "品質", "セキュリティ",
        "risk", "qa", "quality", "security",
    ],
})

# Custom stakeholder RRF weights use their own lookup: id fragments and role
# fragments, checked in order technical → risk → executive.
CUSTOM_WEIGHT_ID_KEYWORDS = _frozen({
    "technical": ["tech", "engineer", "dev", "r-and-d"],
    "risk": ["risk", "security", "qa"],
    "executive": ["business", "exec"],
})

CUSTOM_WEIGHT_ROLE_KEYWORDS = _frozen({
    "technical": ["技術", "エンジニア", "開発", "研究"],
    "risk": ["リスク", "セキュリティ", "品質"],
    "executive": ["経営", "営業"],
})


# ── Concern prioritisation ────────────────────────────────────────────────────

PRIORITY_KEYWORDS_JA = (
    "安全", "リスク", "品質", "コスト", "戦略", "セキュリティ",
    "課題", "検証", "設計", "要件", "技術", "実装",
)

PRIORITY_KEYWORDS_EN = (
    "safety", "risk", "quality", "cost", "strategy",
    "security", "compliance", "performance", "efficiency",
)


# ── Concern-triggered canned queries (custom stakeholders) ────────────────────

# (trigger fragments, canned query); fragments matched on the lowercased concern
CONCERN_TRIGGER_QUERIES = (
    (("コスト", "予算"), "コスト削減 効率化 ROI"),
    (("品質",), "品質向上 不具合削減 テスト"),
    (("スケジュール", "納期"), "プロジェクト管理 マイルストーン 進捗"),
    (("cost", "budget"), "cost reduction efficiency ROI"),
    (("quality",), "quality improvement testing QA"),
    (("schedule", "deadline"), "project management milestone progress"),
)


# ── Bundle ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Lexicons:
    role_translations: Mapping[str, str] = _table(COMMON_ROLE_TRANSLATIONS)
    role_synonyms_ja: Mapping[str, tuple[str, ...]] = _table(ROLE_SYNONYMS_JA)
    role_synonyms_en: Mapping[str, tuple[str, ...]] = _table(ROLE_SYNONYMS_EN)
    role_to_english: Mapping[str, str] = _table(ROLE_TO_ENGLISH)
    english_query_templates: Mapping[str, str] = _table(ENGLISH_QUERY_TEMPLATES)
    role_specific_terms: Mapping[str, tuple[str, ...]] = _table(ROLE_SPECIFIC_TERMS)
    assurance_case_stakeholders: frozenset[str] = ASSURANCE_CASE_STAKEHOLDERS
    assurance_case_query_prefix: str = ASSURANCE_CASE_QUERY_PREFIX

    concern_concretization: Mapping[str, str] = _table(CONCERN_CONCRETIZATION)
    concern_synonyms_ja: Mapping[str, tuple[str, ...]] = _table(CONCERN_SYNONYMS_JA)
    concern_synonyms_en: Mapping[str, tuple[str, ...]] = _table(CONCERN_SYNONYMS_EN)
    concern_translations: Mapping[str, str] = _table(CONCERN_TRANSLATIONS)
    concern_keywords_to_english: Mapping[str, str] = _table(CONCERN_KEYWORDS_TO_ENGLISH)
    max_english_fallback_terms: int = MAX_ENGLISH_FALLBACK_TERMS
    english_last_resort_query: str = ENGLISH_LAST_RESORT_QUERY

    field_terms_ja: Mapping[str, tuple[str, ...]] = _table(FIELD_TERMS_JA)
    field_terms_en: Mapping[str, tuple[str, ...]] = _table(FIELD_TERMS_EN)
    field_english_templates: Mapping[str, str] = _table(FIELD_ENGLISH_TEMPLATES)
    field_detection_keywords: Mapping[str, tuple[str, ...]] = _table(FIELD_DETECTION_KEYWORDS)
    field_synonyms: Mapping[str, tuple[str, ...]] = _table(FIELD_SYNONYMS)
    level_keywords: Mapping[str, tuple[str, ...]] = _table(LEVEL_KEYWORDS)

    predefined_categories: Mapping[str, str] = _table(PREDEFINED_CATEGORIES)
    category_keywords: Mapping[str, tuple[str, ...]] = _table(CATEGORY_KEYWORDS)
    custom_weight_id_keywords: Mapping[str, tuple[str, ...]] = _table(CUSTOM_WEIGHT_ID_KEYWORDS)
    custom_weight_role_keywords: Mapping[str, tuple[str, ...]] = _table(CUSTOM_WEIGHT_ROLE_KEYWORDS)

    priority_keywords_ja: tuple[str, ...] = PRIORITY_KEYWORDS_JA
    priority_keywords_en: tuple[str, ...] = PRIORITY_KEYWORDS_EN
    concern_trigger_queries: tuple[tuple[tuple[str, ...], str], ...] = CONCERN_TRIGGER_QUERIES

    def replace(self, **changes) -> "Lexicons":
        """Return a copy with some tables swapped (dict values are frozen)."""
        frozen = {
            k: _frozen(v) if isinstance(v, dict) else v
            for k, v in changes.items()
        }
        return dataclasses.replace(self, **frozen)


DEFAULT_LEXICONS = Lexicons()
