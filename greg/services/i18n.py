"""User-facing strings for the supported UI languages."""
from __future__ import annotations

UI_LANGUAGES = ("en", "fr")
DEFAULT_UI_LANGUAGE = "en"

_MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "warnings.emptyModelOutput": "⚠️ The model returned an empty answer. Try again or pick another model.",
        "warnings.searchWithoutQuery": "⚠️ The model asked for a web search without a query.",
        "warnings.tooManyWebSearches": "⚠️ Sorry, I reached the web search limit for this message. Please narrow or rephrase your question.",
        "warnings.tooManyActions": "⚠️ Too many actions in a row. Stopping here.",
        "warnings.noUsableText": "⚠️ The model did not produce usable text.",
        "warnings.modelKeepsRequestingSearch": "⚠️ The model keeps requesting web searches although sources were already provided.",
        "warnings.noSourcesFound": "⚠️ No sources found.",
        "status.analyzingSources": "Analyzing {count} source(s)…",
        "status.detectedUrls": "Detected URLs: {count}. Starting analysis…",
        "status.searching": "Searching the web…",
        "status.findingImages": "Looking for images…",
    },
    "fr": {
        "warnings.emptyModelOutput": "⚠️ Le modèle a renvoyé une réponse vide. Réessaie ou choisis un autre modèle.",
        "warnings.searchWithoutQuery": "⚠️ Le modèle a demandé une recherche web sans requête.",
        "warnings.tooManyWebSearches": "⚠️ Désolé, j'ai atteint la limite de recherches web pour ce message. Précise ou reformule ta question.",
        "warnings.tooManyActions": "⚠️ Trop d'actions d'affilée. Arrêt ici.",
        "warnings.noUsableText": "⚠️ Le modèle n'a pas produit de texte exploitable.",
        "warnings.modelKeepsRequestingSearch": "⚠️ Le modèle continue de demander des recherches web alors que les sources sont déjà fournies.",
        "warnings.noSourcesFound": "⚠️ Aucune source trouvée.",
        "status.analyzingSources": "Analyse de {count} source(s)…",
        "status.detectedUrls": "URLs détectées : {count}. Démarrage de l'analyse…",
        "status.searching": "Recherche sur le web…",
        "status.findingImages": "Recherche d'images…",
    },
}


def normalize_ui_language(value: str | None) -> str:
    lang = (value or "").strip().lower()[:2]
    return lang if lang in UI_LANGUAGES else DEFAULT_UI_LANGUAGE


def t(lang: str, key: str, **params) -> str:
    """Translate a key, falling back to English and then to the key itself."""
    table = _MESSAGES.get(normalize_ui_language(lang), {})
    template = table.get(key) or _MESSAGES[DEFAULT_UI_LANGUAGE].get(key) or key
    return template.format(**params) if params else template
