"""
Text Cleaning and Relevance Scoring
Turns raw provider text (HTML fragments, CDATA, entities) into plain text
and scores headlines against a weighted keyword lexicon.
"""
import re
import sys
from typing import Any, List, Tuple

# =============================================================================
# PUBLISHER REPAIR DATA
# =============================================================================

# Feeds strip markup between the publisher name and the headline, so names
# come out glued to the next word ("UOLGoverno anuncia...").
PUBLISHERS_JOIN_PERIOD = ('Estadão', 'UOL', 'G1', 'Globo', 'Folha')
PUBLISHERS_JOIN_SPACE = ('CNN', 'BBC')
PUBLISHERS_AFTER_DIGIT = ('G1', 'UOL', 'CNN', 'BBC', 'Globo')


def _alternation(names: Tuple[str, ...]) -> str:
    return '|'.join(re.escape(name) for name in names)


REPAIR_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r'([A-Za-zÀ-ÿ0-9])&nbsp;&nbsp;([A-ZÀ-Þ])'), r'\1. \2'),
    (re.compile(r'(%s)([A-Z][a-z]{3,})' % _alternation(PUBLISHERS_JOIN_PERIOD)), r'\1. \2'),
    (re.compile(r'(%s)([A-Z][a-z]{3,})' % _alternation(PUBLISHERS_JOIN_SPACE)), r'\1 \2'),
    (re.compile(r'([a-z]+)([0-9]{3})([A-Z][a-z]{3,})'), r'\1 \2. \3'),
    (re.compile(r'(\d)(%s)' % _alternation(PUBLISHERS_AFTER_DIGIT)), r'\1. \2'),
]

# =============================================================================
# ENTITIES
# =============================================================================

NAMED_ENTITIES = {
    'nbsp': ' ',
    'amp': '&',
    'lt': '<',
    'gt': '>',
    'quot': '"',
    'apos': "'",
    'hellip': '...',
    'mdash': '—',
    'ndash': '–',
    'rsquo': "'",
    'lsquo': "'",
    'rdquo': '"',
    'ldquo': '"',
}

ENTITY_PATTERN = re.compile(
    r'&(?:(%s)|#(\d+)|#[xX]([0-9A-Fa-f]+));' % '|'.join(NAMED_ENTITIES)
)

# Double-escaped feeds ("&amp;amp;") need more than one pass
MAX_DECODE_PASSES = 3

CDATA_PATTERN = re.compile(r'<!\[CDATA\[(.*?)\]\]>', re.DOTALL)
TAG_PATTERN = re.compile(r'<[^>]*>')
ESCAPED_TAG_PATTERN = re.compile(r'</?[A-Za-z][^<>]*>')
# Lone UTF-16 halves, e.g. from a JSON "\ud83d" escape
SURROGATE_PATTERN = re.compile('[\ud800-\udfff]')


def _decode_entity(match: re.Match) -> str:
    name, decimal, hexadecimal = match.groups()
    if name:
        return NAMED_ENTITIES[name]
    try:
        codepoint = int(decimal) if decimal else int(hexadecimal, 16)
    except ValueError:
        return match.group(0)
    # NUL is not text, and a lone surrogate cannot be encoded as UTF-8
    if codepoint == 0 or 0xD800 <= codepoint <= 0xDFFF or codepoint > sys.maxunicode:
        return match.group(0)
    return chr(codepoint)


def decode_entities(text: str) -> str:
    """Decode the named entity table plus decimal and hex character references."""
    for _ in range(MAX_DECODE_PASSES):
        decoded = ENTITY_PATTERN.sub(_decode_entity, text)
        if decoded == text:
            break
        text = decoded
    return text


def clean_text(text: Any) -> str:
    """
    Convert provider markup into a single line of plain text.

    Order matters: tags become spaces before the publisher repairs run,
    and the repairs look for raw ``&nbsp;`` pairs so they must run before
    entities are decoded.
    """
    if not text or not isinstance(text, str):
        return ''

    text = SURROGATE_PATTERN.sub('', text)
    text = CDATA_PATTERN.sub(r'\1', text)
    text = TAG_PATTERN.sub(' ', text)

    for pattern, replacement in REPAIR_PATTERNS:
        text = pattern.sub(replacement, text)

    text = decode_entities(text)
    # Escaped HTML only becomes markup after decoding
    text = ESCAPED_TAG_PATTERN.sub(' ', text)

    text = re.sub(r'\s+', ' ', text)
    text = re.sub(r'\.\s*\.', '.', text)
    text = re.sub(r'\n\s*\n', '\n', text)
    return text.strip()

# =============================================================================
# RELEVANCE SCORING
# =============================================================================

BASE_RELEVANCE = 50
MIN_RELEVANCE = 1
MAX_RELEVANCE = 100

# (weight, keywords); lexicon matches the default pt-BR deployment
KEYWORD_TIERS: List[Tuple[int, Tuple[str, ...]]] = [
    (15, ('brasil', 'governo', 'economia', 'eleição', 'presidente',
          'ministro', 'congresso', 'supremo', 'stf')),
    (10, ('política', 'negócios', 'mercado', 'empresa', 'tecnologia',
          'saúde', 'educação')),
    (5, ('local', 'regional', 'municipal', 'estado')),
]


def calculate_relevance(title: str, summary: str,
                        tiers: List[Tuple[int, Tuple[str, ...]]] = KEYWORD_TIERS) -> int:
    """Score a headline in [1, 100]; every matching keyword adds its tier weight."""
    text = f"{title or ''} {summary or ''}".lower()
    score = BASE_RELEVANCE

    for weight, keywords in tiers:
        for keyword in keywords:
            if keyword in text:
                score += weight

    return min(MAX_RELEVANCE, max(MIN_RELEVANCE, score))
