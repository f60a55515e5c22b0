from typing import Any, Dict

LEXICON_EN: Dict[str, Any] = {
    "version": 1,
    "locale": "en",
    "fallback_locale": "en",
    "connectors": ["of", "to", "for", "with"],
    "multipliers": ["x", "times"],
    "scales": {
        "hundred": 100,
        "thousand": 1000,
        "million": 1000000,
    },
    "number_words": {
        "a": 1,
        "an": 1,
        "one": 1,
        "two": 2,
        "three": 3,
        "four": 4,
        "five": 5,
        "six": 6,
        "seven": 7,
        "eight": 8,
        "nine": 9,
        "ten": 10,
        "eleven": 11,
        "twelve": 12,
        "thirteen": 13,
        "fourteen": 14,
        "fifteen": 15,
        "sixteen": 16,
        "seventeen": 17,
        "eighteen": 18,
        "nineteen": 19,
        "twenty": 20,
        "thirty": 30,
        "forty": 40,
        "fifty": 50,
        "sixty": 60,
        "seventy": 70,
        "eighty": 80,
        "ninety": 90,
    },
    "units": [
        # count / packaging
        {"id": "pcs", "type": "count", "aliases": ["pcs", "pc", "piece", "pieces", "item", "items"]},
        {"id": "pack", "type": "count", "aliases": ["pack", "packs", "package", "packages", "pkt"]},
        {"id": "can", "type": "count", "aliases": ["can", "cans"]},
        {"id": "bottle", "type": "count", "aliases": ["bottle", "bottles"]},
        {"id": "bag", "type": "count", "aliases": ["bag", "bags"]},
        {"id": "box", "type": "count", "aliases": ["box", "boxes"]},
        {"id": "crate", "type": "count", "aliases": ["crate", "crates", "case", "cases"]},
        {"id": "tray", "type": "count", "aliases": ["tray", "trays"]},
        {"id": "pallet", "type": "count", "aliases": ["pallet", "pallets"]},
        {"id": "carton", "type": "count", "aliases": ["carton", "cartons"]},
        {"id": "cup", "type": "count", "aliases": ["cup", "cups"]},
        {"id": "jar", "type": "count", "aliases": ["jar", "jars"]},
        {"id": "tube", "type": "count", "aliases": ["tube", "tubes"]},
        {"id": "roll", "type": "count", "aliases": ["roll", "rolls"]},
        # mass
        {"id": "g", "type": "mass", "aliases": ["g", "gram", "grams"]},
        {"id": "kg", "type": "mass", "aliases": ["kg", "kilo", "kilos", "kilogram", "kilograms"]},
        # volume
        {"id": "ml", "type": "volume", "aliases": ["ml", "milliliter", "milliliters", "millilitre", "millilitres"]},
        {"id": "l", "type": "volume", "aliases": ["l", "lt", "liter", "liters", "litre", "litres"]},
    ],
}

LEXICON_DE: Dict[str, Any] = {
    "version": 1,
    "locale": "de",
    "fallback_locale": "en",
    "connectors": ["von", "zu", "für", "mit", "of", "de", "di", "d'", "à", "a"],
    "multipliers": ["x", "mal"],
    "scales": {
        "hundert": 100,
        "tausend": 1000,
        "million": 1000000,
    },
    "number_words": {
        "ein": 1,
        "eins": 1,
        "eine": 1,
        "einen": 1,
        "einem": 1,
        "einer": 1,
        "zwei": 2,
        "drei": 3,
        "vier": 4,
        "fuenf": 5,
        "fünf": 5,
        "sechs": 6,
        "sieben": 7,
        "acht": 8,
        "neun": 9,
        "zehn": 10,
        "elf": 11,
        "zwoelf": 12,
        "zwölf": 12,
        "dreizehn": 13,
        "vierzehn": 14,
        "fuenfzehn": 15,
        "fünfzehn": 15,
        "sechzehn": 16,
        "siebzehn": 17,
        "achtzehn": 18,
        "neunzehn": 19,
        "zwanzig": 20,
        "einundzwanzig": 21,
        "zweiundzwanzig": 22,
        "dreiundzwanzig": 23,
        "vierundzwanzig": 24,
        "fuenfundzwanzig": 25,
        "fünfundzwanzig": 25,
        "dreissig": 30,
        "dreißig": 30,
        "vierzig": 40,
        "fuenfzig": 50,
        "fünfzig": 50,
        "sechzig": 60,
        "siebzig": 70,
        "achtzig": 80,
        "neunzig": 90,
    },
    "units": [
        # count / packaging
        {"id": "pcs", "type": "count", "aliases": ["pcs", "pc", "stk", "stück", "stueck", "teile"]},
        {"id": "pack", "type": "count", "aliases": ["pack", "packs", "packung", "packungen", "päckchen", "paeckchen", "pkt"]},
        {"id": "can", "type": "count", "aliases": ["dose", "dosen"]},
        {"id": "bottle", "type": "count", "aliases": ["flasche", "flaschen"]},
        {"id": "bag", "type": "count", "aliases": ["beutel", "tüte", "tüten", "tuete", "tueten", "sack", "säcke", "saecke"]},
        {"id": "box", "type": "count", "aliases": ["box", "boxen", "schachtel", "schachteln"]},
        {"id": "crate", "type": "count", "aliases": ["kasten", "kaesten", "kästen", "kiste", "kisten", "getränkekasten"]},
        {"id": "tray", "type": "count", "aliases": ["tray", "trays", "träger", "traeger", "schale", "schalen"]},
        {"id": "pallet", "type": "count", "aliases": ["palette", "paletten"]},
        {"id": "carton", "type": "count", "aliases": ["karton", "kartons"]},
        {"id": "cup", "type": "count", "aliases": ["becher"]},
        {"id": "jar", "type": "count", "aliases": ["glas", "gläser", "glaeser"]},
        {"id": "tube", "type": "count", "aliases": ["tube", "tuben"]},
        {"id": "roll", "type": "count", "aliases": ["rolle", "rollen"]},
        # mass
        {"id": "g", "type": "mass", "aliases": ["g", "gramm", "gram"]},
        {"id": "kg", "type": "mass", "aliases": ["kg", "kilo", "kilogramm", "kilogram"]},
        # volume
        {"id": "ml", "type": "volume", "aliases": ["ml", "milliliter", "millilitre"]},
        {"id": "l", "type": "volume", "aliases": ["l", "lt", "liter", "litre"]},
    ],
}

LEXICONS: Dict[str, Dict[str, Any]] = {
    "de": LEXICON_DE,
    "de-de": LEXICON_DE,
    "de-at": LEXICON_DE,
    "de-ch": LEXICON_DE,
    # en-us / en-gb share the metric lexicon for now
    "en": LEXICON_EN,
    "en-us": LEXICON_EN,
    "en-gb": LEXICON_EN,
}


def normalize_locale(locale: Any) -> str:
    """`de_DE` / `de-DE` -> `de-de`; empty -> `en`."""
    s = str(locale or "").strip().replace("_", "-").lower()
    return s or "en"


def resolve_lexicon_key(locale: Any) -> str:
    norm = normalize_locale(locale)
    if norm in LEXICONS:
        return norm
    base = norm.split("-")[0] or "en"
    if base in LEXICONS:
        return base
    return "en"
