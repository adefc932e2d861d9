"""规则兜底匹配器

模型不可用或置信度过低时使用的确定性分类：关键词判断动作类型，
对照菜单提取菜品和数量。同样的菜单和消息永远得到同样的结果。
"""

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from waiter_engine.core.types import ActionType
from waiter_engine.models.menu import MenuItem
from waiter_engine.nlp.menu_resolver import normalize_name

WORD_NUMBERS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
    "a": 1, "an": 1, "a couple of": 2, "couple of": 2,
}

CANCEL_PATTERNS = [r"\bcancel\b", r"\bcall off\b", r"\bforget (?:about )?(?:my|the) order\b"]
REMOVE_PATTERNS = [r"\bremove\b", r"\btake (?:off|out)\b", r"\bdrop the\b", r"\bno more\b", r"\bdon't want the\b"]
EDIT_PATTERNS = [r"\bchange\b", r"\bmodify\b", r"\bedit\b", r"\bswap\b", r"\binstead of\b"]
STATUS_PATTERNS = [
    r"\bstatus\b", r"\bmy orders?\b", r"\bwhere(?:'s| is) my\b", r"\bhow long\b",
    r"\bwhat did i order\b", r"\bcheck\b",
]
ORDER_PATTERNS = [
    r"\border\b", r"\bwant\b", r"\bwould like\b", r"\bi'?d like\b", r"\bget\b", r"\bhave\b",
    r"\badd\b", r"\bbring\b", r"\bi'?ll take\b", r"\bgive me\b", r"\bcan i\b", r"\bplease\b",
]
RECOMMEND_PATTERNS = [r"\brecommend", r"\bsuggest", r"\bwhat'?s good\b", r"\bpopular\b", r"\bspecials?\b"]
INFO_PATTERNS = [r"\bmenu\b", r"\bhow much\b", r"\bprice\b", r"\bwhat do you have\b", r"\bingredients?\b", r"\bvegan\b",
                 r"\bvegetarian\b", r"\bgluten\b"]

NO_ACTION_CONFIDENCE = 0.3

# 不能单独作为菜品别名的修饰词
ALIAS_STOPWORDS = {"fresh", "classic", "house", "grilled", "special", "seasonal", "french"}

_QUANTITY_WORDS = "|".join(sorted((re.escape(w) for w in WORD_NUMBERS), key=len, reverse=True))
# 连接词隔开的是另一道菜
_CONJUNCTIONS = r"(?:and|with|plus|or|then|also)"
# 菜名前的数量，允许中间夹两个修饰词，如 "2 large caesar salads"
_QUANTITY_BEFORE = re.compile(
    rf"(?:^|\s)(\d+|{_QUANTITY_WORDS})\s+(?:x\s+)?(?:(?!{_CONJUNCTIONS}\s)[a-z'-]+\s+){{0,2}}$"
)


@dataclass
class FallbackMatch:
    """兜底匹配结果"""
    action_type: ActionType
    confidence: float
    items: List[Tuple[MenuItem, int]] = field(default_factory=list)
    target_item: Optional[MenuItem] = None
    target_quantity: Optional[int] = None
    information_type: Optional[str] = None
    reasoning: str = ""


def _any(patterns: Sequence[str], text: str) -> bool:
    return any(re.search(p, text) for p in patterns)


class FallbackActionMatcher:
    """确定性动作匹配"""

    def __init__(self, menu_items: Sequence[MenuItem], hit_confidence: float = 0.6):
        self.menu_items = [item for item in menu_items if item.available]
        self.hit_confidence = hit_confidence
        self._aliases = self._build_aliases(self.menu_items)

    @staticmethod
    def _build_aliases(items: Sequence[MenuItem]) -> List[Tuple[str, MenuItem]]:
        """完整菜名 + 只出现在一个菜名里的独特词（如 'margherita'、'burger'）"""
        word_counts: Counter = Counter()
        for item in items:
            word_counts.update(set(normalize_name(item.name).split()))

        aliases: Dict[str, MenuItem] = {}
        for item in items:
            full = normalize_name(item.name)
            aliases[full] = item
            for word in full.split():
                if len(word) >= 4 and word_counts[word] == 1 and word not in ALIAS_STOPWORDS and word not in aliases:
                    aliases[word] = item
        # 长的先匹配，避免 'caesar' 抢在 'caesar salad' 前面
        return sorted(aliases.items(), key=lambda pair: len(pair[0]), reverse=True)

    def extract_items(self, message: str) -> List[Tuple[MenuItem, int]]:
        """提取 (菜品, 数量)，按在消息中出现的顺序"""
        return [(item, quantity) for item, quantity, _ in self._scan(message)]

    def _scan(self, message: str) -> List[Tuple[MenuItem, int, bool]]:
        text = normalize_name(message)
        spans: List[Tuple[int, int, MenuItem, bool]] = []

        for alias, item in self._aliases:
            pattern = re.compile(rf"\b{re.escape(alias)}(e?s)?\b")
            for match in pattern.finditer(text):
                start, end = match.span()
                if any(start < s_end and end > s_start for s_start, s_end, _, _ in spans):
                    continue
                spans.append((start, end, item, bool(match.group(1))))

        # 数量只在上一个菜名之后查找，前一个菜的数量不会带到下一个菜上
        found: Dict[str, List] = {}
        previous_end = 0
        for start, end, item, plural in sorted(spans, key=lambda span: span[0]):
            quantity, explicit = self._quantity_before(text[previous_end:start], plural)
            previous_end = end
            if item.id in found:
                found[item.id][2] += quantity
                found[item.id][3] = found[item.id][3] or explicit
            else:
                found[item.id] = [start, item, quantity, explicit]

        ordered = sorted(found.values(), key=lambda entry: entry[0])
        return [(item, quantity, explicit) for _, item, quantity, explicit in ordered]

    @staticmethod
    def _quantity_before(prefix: str, plural: bool) -> Tuple[int, bool]:
        """数字 > 英文数词 > 复数形式(2) > 默认 1；第二个值表示数量是否明确给出"""
        match = _QUANTITY_BEFORE.search(prefix)
        if match:
            token = match.group(1)
            if token.isdigit():
                return max(int(token), 1), True
            return WORD_NUMBERS[token], token not in ("a", "an")
        return (2 if plural else 1), False

    def match(self, message: str, has_pending_order: bool = False) -> FallbackMatch:
        text = message.lower()
        scanned = self._scan(message)
        items = [(item, quantity) for item, quantity, _ in scanned]

        if _any(CANCEL_PATTERNS, text):
            return FallbackMatch(ActionType.CANCEL_ORDER, self.hit_confidence, reasoning="cancel keyword")

        if _any(REMOVE_PATTERNS, text):
            if scanned:
                item, quantity, explicit = scanned[0]
                return FallbackMatch(
                    ActionType.REMOVE_FROM_ORDER, self.hit_confidence,
                    target_item=item, target_quantity=quantity if explicit else None,
                    reasoning="remove keyword with menu item"
                )
            return FallbackMatch(ActionType.CLARIFY, self.hit_confidence, reasoning="remove keyword without item")

        if items and _any(EDIT_PATTERNS, text):
            return FallbackMatch(ActionType.EDIT_ORDER_REQUEST, self.hit_confidence, reasoning="edit keyword")

        if items:
            action_type = ActionType.ADD_TO_ORDER if has_pending_order else ActionType.PLACE_ORDER
            reason = "order keyword with menu items" if _any(ORDER_PATTERNS, text) else "menu items mentioned"
            return FallbackMatch(action_type, self.hit_confidence, items=items, reasoning=reason)

        if _any(EDIT_PATTERNS, text):
            return FallbackMatch(ActionType.EDIT_ORDER_REQUEST, self.hit_confidence, reasoning="edit keyword")

        if _any(STATUS_PATTERNS, text):
            return FallbackMatch(ActionType.CHECK_ORDERS, self.hit_confidence, reasoning="status keyword")

        if _any(RECOMMEND_PATTERNS, text):
            return FallbackMatch(
                ActionType.PROVIDE_INFO, self.hit_confidence,
                information_type="recommendation", reasoning="recommendation keyword"
            )

        if _any(INFO_PATTERNS, text):
            return FallbackMatch(
                ActionType.PROVIDE_INFO, self.hit_confidence,
                information_type="menu_item_details", reasoning="menu question keyword"
            )

        return FallbackMatch(ActionType.NO_ACTION, NO_ACTION_CONFIDENCE, reasoning="no pattern matched")
