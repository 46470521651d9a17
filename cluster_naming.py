#!/usr/bin/env python3
"""
Cluster naming heuristics — pure functions, no store or network access.

- stem_word():            light plural/gerund suffix stripping
- match_category():       curated keyword → category table with partial-prefix matching
- name_from_fact():       deterministic 1-3 word label for a brand-new cluster
- name_from_members():    word-frequency label for an existing cluster
- PersonFactDetector:     "is this fact about a person in the user's life?"
"""

import re
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Optional

DEFAULT_NAME = "General"
MAX_NAME_LENGTH = 50

STOP_WORDS = frozenset("""
    the a an is are was were be been being have has had do does did will would
    could should may might shall can need must to of in for on with at by from
    as into through during before after above below between out off over under
    again further then once here there when where why how all each every both
    few more most other some such no nor not only own same so than too very
    just because but and or if while that this these those it its i me my we
    our you your he him his she her they them their what which who whom
    user users uses using used runs running loves prefers wants enjoys includes
    named called like likes also about currently really much many one two
""".split())

# ── Stemming ─────────────────────────────────────────────────────────────────

def stem_word(word: str) -> str:
    w = word.lower()
    if w.endswith("ies") and len(w) > 4:
        return w[:-3] + "y"
    if w.endswith("ses") and len(w) > 4:
        return w[:-2]
    if w.endswith("ing") and len(w) > 5:
        return w[:-3]
    if w.endswith("tion"):
        return w
    if w.endswith("s") and not w.endswith("ss") and len(w) > 3:
        return w[:-1]
    return w


def clean_word(word: str) -> str:
    return re.sub(r"[^a-zA-Z0-9-]", "", word)


def content_words(text: str) -> list[str]:
    """Cleaned, non-stop-word tokens longer than two characters."""
    words = []
    for raw in re.split(r"[\s/]+", text):
        w = clean_word(raw)
        if len(w) > 2 and w.lower() not in STOP_WORDS:
            words.append(w)
    return words


# ── Curated categories ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class CategoryRule:
    name: str
    keywords: tuple
    min_hits: int = 2


CATEGORY_RULES: tuple = (
    CategoryRule("Pets & Animals", ("dog", "cat", "pet", "dragon", "bearded", "animal", "puppy", "kitten")),
    CategoryRule("People & Family", (
        "father", "mother", "partner", "family", "wife", "husband", "brother",
        "sister", "kid", "children", "daughter", "parent",
    )),
    CategoryRule("Gaming", ("battletech", "mech", "marauder", "game", "strategy", "robot")),
    CategoryRule("Hardware & Infrastructure", (
        "server", "vram", "gpu", "cpu", "ram", "rtx", "nvidia", "amd", "hardware",
        "linux", "garuda", "strix", "halo", "ubiquiti", "network", "infrastructure",
    )),
    CategoryRule("Business & MSP", (
        "client", "kaseya", "syncro", "msp", "business", "endpoint", "autotask",
        "rmm", "psa", "migrat", "managed", "service", "provider", "subscriptions",
        "self-hosted", "local-first",
    ), min_hits=1),
    CategoryRule("Creative Projects", (
        "constantinople", "opera", "song", "lyric", "aria", "arioso", "recitative",
        "hagia", "sophia", "chorus", "mosaic",
    )),
    CategoryRule("Story & Fiction", ("story", "fiction", "transylvania", "flee", "journey", "novel", "young", "woman")),
    CategoryRule("AI & Projects", ("ai", "ollama", "llama", "model", "embedding", "cluster", "memory")),
    CategoryRule("Preferences & Philosophy", ("self-hosted", "local", "philosophy", "build", "prefer")),
    CategoryRule("Software & Dev", (
        "code", "python", "javascript", "programming", "software", "docker",
        "kubernetes", "api", "database",
    )),
    CategoryRule("Music", ("music", "band", "guitar", "piano", "album")),
    CategoryRule("Food & Drink", ("food", "cooking", "homebrew", "beer", "recipe")),
)


def _key_matches(stem: str, key: str) -> bool:
    return stem == key or stem.startswith(key) or key.startswith(stem)


def category_hits(stems: Iterable[str], rule: CategoryRule) -> int:
    """Number of the rule's keywords hit by any stem (each keyword counts once)."""
    stems = [s for s in stems if s]
    return sum(1 for key in rule.keywords if any(_key_matches(s, key) for s in stems))


def match_category(
    stems: Iterable[str],
    rules: tuple = CATEGORY_RULES,
    qualified_only: bool = False,
) -> Optional[str]:
    """
    Best curated category for a bag of stems, or None.

    The rule with the most keyword hits wins (table order breaks ties) and is
    only returned when its hits reach its min_hits. With qualified_only, rules
    below their own min_hits never compete.
    """
    stems = list(stems)
    best_rule, best_hits = None, 0
    for rule in rules:
        hits = category_hits(stems, rule)
        if qualified_only and hits < rule.min_hits:
            continue
        if hits > best_hits:
            best_rule, best_hits = rule, hits
    if best_rule and best_hits >= best_rule.min_hits:
        return best_rule.name
    return None


def text_stems(text: str) -> list[str]:
    """Stems plus raw lowercase words, for category matching against one text."""
    words = content_words(text)
    return [stem_word(w) for w in words] + [w.lower() for w in words]


def categorize_text(text: str, rules: tuple = CATEGORY_RULES) -> Optional[str]:
    return match_category(text_stems(text), rules, qualified_only=True)


# ── Names ────────────────────────────────────────────────────────────────────

FACT_PREFIXES = (
    re.compile(
        r"^(the\s+)?user('s)?\s+(has|is|loves|runs|uses|prefers|wants|enjoys|works|lives|owns|plays|likes)\s+",
        re.IGNORECASE,
    ),
    re.compile(r"^(the\s+)?user('s)?\s+", re.IGNORECASE),
    re.compile(r"^(I|My|This|That|There|The)\s+"),
)
TRAILING_CLAUSE = re.compile(r"[.,!?;:].*$", re.DOTALL)


def name_from_fact(fact: str) -> str:
    """Deterministic label: drop the subject/verb lead-in, cut at punctuation, keep 1-3 content words."""
    text = fact.strip()
    for pattern in FACT_PREFIXES:
        text = pattern.sub("", text)
    text = TRAILING_CLAUSE.sub("", text)
    words = content_words(text)[:3]
    if not words:
        return DEFAULT_NAME
    return " ".join(w[:1].upper() + w[1:].lower() for w in words)[:MAX_NAME_LENGTH]


def clean_model_name(raw: str) -> Optional[str]:
    """Normalize a model-suggested category name; None if unusable."""
    name = raw.strip().splitlines()[0] if raw and raw.strip() else ""
    name = name.strip().strip("\"'`*#").strip()
    name = re.sub(r"^(category( name)?:)\s*", "", name, flags=re.IGNORECASE).strip()
    if not name:
        return None
    return name[:MAX_NAME_LENGTH]


def name_from_members(texts: Iterable[str], rules: tuple = CATEGORY_RULES) -> str:
    """
    Word-frequency label for a cluster.

    Group words by stem (keeping the most frequent surface form), try the
    curated categories first, else title-case the top three stems.
    """
    stem_counts: Counter = Counter()
    surface: dict[str, Counter] = {}
    all_stems: set[str] = set()
    for text in texts:
        for w in content_words(text):
            lower = w.lower()
            stem = stem_word(lower)
            stem_counts[stem] += 1
            surface.setdefault(stem, Counter())[lower] += 1
            all_stems.add(stem)
            all_stems.add(lower)

    if not stem_counts:
        return DEFAULT_NAME

    category = match_category(all_stems, rules)
    if category:
        return category

    top = [stem for stem, _ in stem_counts.most_common(3)]
    words = [surface[stem].most_common(1)[0][0] for stem in top]
    return " ".join(w[:1].upper() + w[1:] for w in words)[:MAX_NAME_LENGTH]


# ── Person facts ─────────────────────────────────────────────────────────────

RELATION_RE = re.compile(
    r"\b(father|mother|partner|wife|husband|son|daughter|brother|sister|cares?\s+for)\b",
    re.IGNORECASE,
)
PEOPLE_NAME_RE = re.compile(r"people|family|person", re.IGNORECASE)


class PersonFactDetector:
    """Relationship-word regex plus an optional, configurable set of known names."""

    def __init__(self, names: Iterable[str] = ()):
        self.names = frozenset(n.lower() for n in names if n)

    def is_person_fact(self, text: str) -> bool:
        if RELATION_RE.search(text):
            return True
        if self.names:
            tokens = {clean_word(t).lower() for t in text.split()}
            return bool(tokens & self.names)
        return False

    @staticmethod
    def is_people_cluster_name(name: str) -> bool:
        return bool(PEOPLE_NAME_RE.search(name or ""))
