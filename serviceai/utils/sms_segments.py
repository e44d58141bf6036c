"""
SMS segment arithmetic.

GSM-7 messages fit 160 septets in one segment (153 per part once concatenated);
anything outside the GSM-7 alphabet is sent as UCS-2 with 70/67 UTF-16 units.
"""
import math
from typing import List

GSM7_BASIC = (
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞÆæßÉ !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§¿abcdefghijklmnopqrstuvwxyzäöñüà"
)
GSM7_EXTENDED = "^{}\\[~]|€\f"

GSM7_SINGLE = 160
GSM7_MULTI = 153
UCS2_SINGLE = 70
UCS2_MULTI = 67


def is_gsm7(text: str) -> bool:
    return all(ch in GSM7_BASIC or ch in GSM7_EXTENDED for ch in text)


def encoded_length(text: str, gsm7: bool) -> int:
    """Length in septets (GSM-7) or UTF-16 code units (UCS-2)"""
    if gsm7:
        return sum(2 if ch in GSM7_EXTENDED else 1 for ch in text)
    return len(text.encode("utf-16-le")) // 2


def single_segment_limit(text: str) -> int:
    return GSM7_SINGLE if is_gsm7(text) else UCS2_SINGLE


def segment_count(text: str) -> int:
    if not text:
        return 1
    gsm7 = is_gsm7(text)
    length = encoded_length(text, gsm7)
    single, multi = (GSM7_SINGLE, GSM7_MULTI) if gsm7 else (UCS2_SINGLE, UCS2_MULTI)
    if length <= single:
        return 1
    return math.ceil(length / multi)


def _pack_words(words: List[str], limit: int, gsm7: bool) -> List[str]:
    chunks: List[str] = []
    current = ""
    for word in words:
        # A single word longer than the limit is hard-split
        while encoded_length(word, gsm7) > limit:
            if current:
                chunks.append(current)
                current = ""
            cut = limit
            while encoded_length(word[:cut], gsm7) > limit:
                cut -= 1
            chunks.append(word[:cut])
            word = word[cut:]
        if not word:
            continue
        candidate = f"{current} {word}" if current else word
        if encoded_length(candidate, gsm7) <= limit:
            current = candidate
        else:
            chunks.append(current)
            current = word
    if current:
        chunks.append(current)
    return chunks


def split_message(text: str) -> List[str]:
    """
    Split text at whitespace into single-segment parts prefixed "(i/n) ".
    Returns [text] unchanged when it already fits one segment.
    """
    gsm7 = is_gsm7(text)
    limit = GSM7_SINGLE if gsm7 else UCS2_SINGLE
    if encoded_length(text, gsm7) <= limit:
        return [text]

    words = text.split()
    if not words:
        return [text]
    parts = 2
    while True:
        prefix_len = len(f"({parts}/{parts}) ")
        chunks = _pack_words(words, limit - prefix_len, gsm7)
        if len(str(len(chunks))) <= len(str(parts)):
            break
        parts = len(chunks)

    total = len(chunks)
    return [f"({i}/{total}) {chunk}" for i, chunk in enumerate(chunks, start=1)]
