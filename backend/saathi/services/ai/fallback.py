"""Templated replies used when the answer generator cannot answer."""
from typing import Dict, Optional

from saathi.models.profile import LanguagePreference
from saathi.models.scheme import Scheme

APOLOGY_TEMPLATES: Dict[LanguagePreference, str] = {
    LanguagePreference.EN: (
        "Sorry, I could not prepare a full answer right now. "
        "Please ask again in a few minutes."
    ),
    LanguagePreference.HI: (
        "क्षमा करें, अभी पूरा उत्तर तैयार नहीं हो सका। "
        "कृपया कुछ मिनट बाद फिर से पूछें।"
    ),
    LanguagePreference.HINGLISH: (
        "Maaf kijiye, abhi poora jawab tayyar nahi ho paaya. "
        "Kripya kuch minute baad dobara poochhiye."
    ),
}

SCHEME_HINT_TEMPLATES: Dict[LanguagePreference, str] = {
    LanguagePreference.EN: "Meanwhile, this scheme may be relevant: {name}. {description} Details: {link}",
    LanguagePreference.HI: "तब तक आप यह योजना देख सकते हैं: {name}. {description} जानकारी: {link}",
    LanguagePreference.HINGLISH: "Tab tak aap yeh scheme dekh sakte hain: {name}. {description} Jaankari: {link}",
}


def build_apology(language: LanguagePreference, top_scheme: Optional[Scheme] = None) -> str:
    """Apology text, pointing at the best-ranked scheme when there is one."""
    text = APOLOGY_TEMPLATES[language]
    if top_scheme is not None:
        hint = SCHEME_HINT_TEMPLATES[language].format(
            name=top_scheme.name,
            description=top_scheme.description,
            link=top_scheme.official_link,
        )
        text = f"{text} {hint}"
    return text
