#!/usr/bin/env python3
"""
Keyword Classifiers
Rule tables for topic, interest, formality and sentiment detection behind a
small `classify(text) -> Classification` interface, so each table can be
tested on its own and swapped without touching the memory/profile state.
Tables are bilingual (Portuguese and English).
"""

import re
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple, Pattern

import numpy as np

GENERAL_TOPIC = "general"

# Ordered: the first matching category wins
TOPIC_KEYWORDS: List[Tuple[str, List[str]]] = [
    ("nutrition", ["nutrição", "nutricao", "nutricion", "dieta", "alimento", "alimentação", "caloria",
                   "refeição", "refeicao", "comida", "nutrition", "diet", "food", "meal", "calorie", "protein"]),
    ("exercise", ["exercício", "exercicio", "treino", "academia", "corrida", "musculação", "musculacao",
                  "exercise", "workout", "gym", "training", "running", "jogging"]),
    ("productivity", ["lembrete", "agenda", "tarefa", "produtividade", "organização",
                      "reminder", "schedule", "task", "todo", "calendar", "productivity"]),
    ("commands", ["comando", "ajuda", "menu", "command", "help"]),
    ("financial", ["preço", "preco", "custo", "pagamento", "pagar", "price", "cost", "payment", "invoice"]),
    ("configuration", ["configura", "ajustar", "config", "setting", "adjust"]),
]

INTEREST_KEYWORDS: List[Tuple[str, List[str]]] = [
    ("nutrition", ["nutrição", "nutricao", "dieta", "alimento", "caloria", "vitamina",
                   "nutrition", "diet", "food", "calorie", "vitamin"]),
    ("exercise", ["exercício", "exercicio", "treino", "academia", "corrida", "musculação",
                  "exercise", "workout", "gym", "running", "weightlifting"]),
    ("productivity", ["lembrete", "agenda", "tarefa", "organização", "produtividade",
                      "reminder", "schedule", "task", "organization", "productivity"]),
    ("health", ["saúde", "saude", "médico", "medico", "exame", "sintoma", "tratamento",
                "health", "doctor", "checkup", "symptom", "treatment"]),
]

FORMAL_MARKERS = ["por favor", "obrigado", "obrigada", "desculpe", "com licença",
                  "please", "thank you", "thanks", "excuse me", "sorry", "kindly"]
CASUAL_MARKERS = ["oi", "olá", "ola", "beleza", "tranquilo", "valeu",
                  "hi", "hey", "yo", "cool", "cheers", "sup"]

POSITIVE_WORDS = ["bom", "boa", "ótimo", "otimo", "excelente", "perfeito", "obrigad", "legal", "bacana",
                  "good", "great", "excellent", "perfect", "thank", "awesome", "nice", "love"]
NEGATIVE_WORDS = ["ruim", "terrível", "terrivel", "péssimo", "pessimo", "erro", "problema", "dificuldade",
                  "não gosto", "bad", "terrible", "awful", "error", "problem", "hate", "don't like"]

KEY_POINT_MARKERS: List[Tuple[str, List[str]]] = [
    ("importance", ["importante", "essencial", "crucial", "important", "essential", "critical"]),
    ("problem", ["problema", "dificuldade", "erro", "problem", "difficult", "error", "issue"]),
    ("solution", ["solução", "solucao", "resolver", "corrigir", "solution", "solve", "fix"]),
    ("preference", ["preferência", "preferencia", "prefiro", "gosto", "não gosto",
                    "prefer", "i like", "i don't like"]),
]

ACTION_ITEM_MARKERS: List[Tuple[str, List[str]]] = [
    ("create", ["criar", "crie", "create", "make a", "build"]),
    ("schedule", ["agendar", "agende", "marcar", "schedule", "book"]),
    ("reminder", ["lembrar", "lembre", "anotar", "salvar", "remember", "remind", "note down", "save"]),
    ("configuration", ["configurar", "ajustar", "definir", "configure", "set up", "adjust"]),
]

VOICE_MARKERS = ["áudio", "audio", "voz", "voice"]
TEXT_MARKERS = ["texto", "escrito", "text", "written"]
PRIVACY_MARKERS = ["privacidade", "dados", "privacy", "data"]
PRIVACY_HIGH_MARKERS = ["alto", "alta", "máximo", "maximo", "high", "maximum"]
PRIVACY_LOW_MARKERS = ["baixo", "baixa", "mínimo", "minimo", "low", "minimum"]

# Query phrase -> words that make a stored message a contextual hit for it
CONTEXTUAL_QUERY_PATTERNS: Dict[str, List[str]] = {
    "como eu disse": ["disse", "falei", "mencionei"],
    "like i said": ["said", "told", "mentioned"],
    "aquele": ["restaurante", "lugar", "produto", "serviço"],
    "that place": ["restaurant", "place", "store", "shop"],
    "faça de novo": ["repetir", "fazer novamente", "executar"],
    "do it again": ["repeat", "again", "run"],
    "antes": ["anteriormente", "antes", "no passado"],
    "before": ["previously", "before", "earlier"],
}


def keyword_pattern(keywords: Sequence[str], whole_word: bool = False) -> Pattern:
    """Alternation anchored at a word start, optionally at a word end too"""
    # Longest first so multi-word markers win over their prefixes
    ordered = sorted(set(keywords), key=len, reverse=True)
    body = "|".join(re.escape(keyword) for keyword in ordered)
    suffix = r"(?!\w)" if whole_word else ""
    return re.compile(rf"(?<!\w)(?:{body}){suffix}", re.IGNORECASE)


def count_markers(text: str, pattern: Pattern) -> int:
    return len(pattern.findall(text or ""))


@dataclass(frozen=True)
class Classification:
    label: str
    confidence: float


class Classifier(ABC):
    """classify(text) -> label with confidence in [0, 1]"""

    @abstractmethod
    def classify(self, text: str) -> Classification:
        ...


class KeywordClassifier(Classifier):
    """Ordered keyword categories; the first category with a hit wins"""

    def __init__(self, categories: List[Tuple[str, List[str]]], fallback: str = GENERAL_TOPIC,
                 whole_word: bool = False):
        self.fallback = fallback
        self.categories = [(label, keyword_pattern(keywords, whole_word)) for label, keywords in categories]

    @property
    def labels(self) -> List[str]:
        return [label for label, _ in self.categories] + [self.fallback]

    def classify(self, text: str) -> Classification:
        for label, pattern in self.categories:
            hits = count_markers(text, pattern)
            if hits:
                return Classification(label, min(1.0, 0.5 + 0.25 * hits))
        return Classification(self.fallback, 0.0)

    def label(self, text: str) -> str:
        return self.classify(text).label

    def all_labels(self, text: str) -> List[str]:
        """Every category with at least one hit, in table order"""
        return [label for label, pattern in self.categories if pattern.search(text or "")]


class TopicClassifier(KeywordClassifier):
    def __init__(self, categories: List[Tuple[str, List[str]]] = None):
        super().__init__(categories or TOPIC_KEYWORDS, fallback=GENERAL_TOPIC)


class InterestClassifier(KeywordClassifier):
    def __init__(self, categories: List[Tuple[str, List[str]]] = None):
        super().__init__(categories or INTEREST_KEYWORDS, fallback=GENERAL_TOPIC)


class FormalityClassifier(Classifier):
    """Politeness markers against casual markers, whole words only"""

    def __init__(self, formal: List[str] = None, casual: List[str] = None):
        self.formal = keyword_pattern(formal or FORMAL_MARKERS, whole_word=True)
        self.casual = keyword_pattern(casual or CASUAL_MARKERS, whole_word=True)

    def counts(self, text: str) -> Tuple[int, int]:
        return count_markers(text, self.formal), count_markers(text, self.casual)

    def classify(self, text: str) -> Classification:
        formal, casual = self.counts(text)
        total = formal + casual
        if formal > casual:
            return Classification("formal", formal / total)
        if casual > formal:
            return Classification("casual", casual / total)
        return Classification("neutral", 0.0)


class SentimentClassifier(Classifier):
    """Positive words are checked before negative ones"""

    def __init__(self, positive: List[str] = None, negative: List[str] = None):
        self.positive = keyword_pattern(positive or POSITIVE_WORDS)
        self.negative = keyword_pattern(negative or NEGATIVE_WORDS)

    def classify(self, text: str) -> Classification:
        positive = count_markers(text, self.positive)
        if positive:
            return Classification("positive", min(1.0, 0.5 + 0.25 * positive))
        negative = count_markers(text, self.negative)
        if negative:
            return Classification("negative", min(1.0, 0.5 + 0.25 * negative))
        return Classification("neutral", 0.0)


def topic_similarity(previous: Sequence[str], current: Sequence[str]) -> float:
    """
    Weighted Jaccard (sum of mins over sum of maxes) between the relative
    topic frequencies of two label multisets. Order never matters and equal
    distributions give 1.0.
    """
    if not previous or not current:
        return 0.0

    previous_counts = Counter(previous)
    current_counts = Counter(current)
    topics = sorted(set(previous_counts) | set(current_counts))

    a = np.array([previous_counts[topic] for topic in topics], dtype=float) / len(previous)
    b = np.array([current_counts[topic] for topic in topics], dtype=float) / len(current)

    union = np.maximum(a, b).sum()
    if union == 0:
        return 0.0
    return float(np.minimum(a, b).sum() / union)
