"""Readability-style scoring of HTML subtrees for main-content detection."""

import logging
import math

from bs4 import Tag

from knowledge_ingest.core.constants import NEGATIVE_CLASS_PATTERN, POSITIVE_CLASS_PATTERN

logger = logging.getLogger(__name__)

# Base scores by element semantics
ELEMENT_TYPE_SCORES = {
    "article": 25,
    "main": 20,
    "section": 15,
    "div": 5,
    "p": 3,
    "td": 3,
    "pre": 3,
}

CLASS_WEIGHT = 25
MAX_COMMA_POINTS = 10
MAX_LENGTH_POINTS = 30
CHARS_PER_LENGTH_POINT = 100
POINTS_PER_PARAGRAPH = 3
IMAGE_GALLERY_PENALTY = 5
LINK_DENSITY_PENALTY = 25

# Logistic squashing of raw scores into [0, 1]
CONFIDENCE_MIDPOINT = 20.0
CONFIDENCE_SCALE = 10.0


def _visible_length(node: Tag) -> int:
    """Number of non-whitespace characters of text below ``node``."""
    return sum(len(part) for part in node.get_text().split())


class ContentScorer:
    """Scores a DOM subtree for how likely it is the article body.

    Scores are unbounded and signed: semantic containers, prose signals
    (commas, length, paragraphs) and content-like class names raise them;
    boilerplate class names, image galleries and link-heavy text lower them.
    Pure evaluation, no I/O.
    """

    def calculate_score(self, node: Tag) -> float:
        if node is None:
            raise TypeError("node must not be None")

        score = float(
            self._element_type_score(node)
            + self._class_id_weight(node)
            + self._content_characteristics_score(node)
            + self._image_paragraph_penalty(node)
        )

        link_density = self.calculate_link_density(node)
        if score > 0:
            score *= 1.0 - link_density
        score -= LINK_DENSITY_PENALTY * link_density
        return score

    def calculate_link_density(self, node: Tag) -> float:
        """Share of the node's text that sits inside anchors (0 when no text)."""
        text_length = _visible_length(node)
        if text_length == 0:
            return 0.0
        link_length = sum(_visible_length(a) for a in node.find_all("a"))
        return min(1.0, link_length / text_length)

    def calculate_text_density(self, node: Tag) -> float:
        """Plain text length relative to the serialized markup length."""
        markup_length = len(str(node))
        if markup_length == 0:
            return 0.0
        return min(1.0, len(node.get_text().strip()) / markup_length)

    def get_confidence_score(self, node: Tag) -> float:
        """Raw score squashed into [0, 1]; monotonic in the raw score."""
        raw = self.calculate_score(node)
        return 1.0 / (1.0 + math.exp(-(raw - CONFIDENCE_MIDPOINT) / CONFIDENCE_SCALE))

    @staticmethod
    def _element_type_score(node: Tag) -> int:
        return ELEMENT_TYPE_SCORES.get((node.name or "").lower(), 0)

    @staticmethod
    def _class_id_weight(node: Tag) -> int:
        classes = node.get("class") or []
        if isinstance(classes, str):
            classes = [classes]
        class_id = f"{' '.join(classes)} {node.get('id') or ''}".strip()

        weight = 0
        if class_id:
            if NEGATIVE_CLASS_PATTERN.search(class_id):
                weight -= CLASS_WEIGHT
                logger.debug(f"Negative pattern match for <{node.name}> class/id={class_id}")
            if POSITIVE_CLASS_PATTERN.search(class_id):
                weight += CLASS_WEIGHT
                logger.debug(f"Positive pattern match for <{node.name}> class/id={class_id}")

        if (node.get("role") or "").lower() == "main":
            weight += CLASS_WEIGHT
        return weight

    @staticmethod
    def _content_characteristics_score(node: Tag) -> int:
        text = node.get_text().strip()
        score = min(text.count(","), MAX_COMMA_POINTS)
        score += min(len(text) // CHARS_PER_LENGTH_POINT, MAX_LENGTH_POINTS)
        score += len(node.find_all("p")) * POINTS_PER_PARAGRAPH
        return score

    @staticmethod
    def _image_paragraph_penalty(node: Tag) -> int:
        images = len(node.find_all("img"))
        paragraphs = len(node.find_all("p"))
        if images > paragraphs and images > 1:
            return -IMAGE_GALLERY_PENALTY * (images - paragraphs)
        return 0
