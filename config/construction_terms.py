"""Construction vocabulary used when normalizing BoQ and price-list descriptions.

Starter lists for English-language bills. Extend per market as needed.
"""

SYNONYM_GROUPS = [
    {
        "canonical": "brick",
        "synonyms": ["bricks", "brickwork", "blocks", "blockwork"],
        "category": "Masonry"
    },
    {
        "canonical": "concrete",
        "synonyms": ["cement", "concrete"],
        "category": "Concrete"
    },
    {
        "canonical": "foundation",
        "synonyms": ["footing", "footings", "foundations"],
        "category": "Substructure"
    },
    {
        "canonical": "excavate",
        "synonyms": ["excavation", "excavations", "excavate", "dig"],
        "category": "Earthworks"
    },
    {
        "canonical": "install",
        "synonyms": ["installation", "installing", "installed"],
        "category": "General"
    },
    {
        "canonical": "demolish",
        "synonyms": ["demolition", "demolishing", "remove"],
        "category": "Demolition"
    },
    {
        "canonical": "provide",
        "synonyms": ["supply", "supplies", "providing"],
        "category": "General"
    }
]

STOP_WORDS = frozenset({
    "the", "and", "of", "to", "in", "for", "on", "at", "by", "from", "with",
    "a", "an", "be", "is", "are", "as", "it", "its", "into", "or",
})

# Leading words of rows that are headings, subtotals or page furniture
NON_ITEM_PREFIXES = [
    r"^description",
    r"^item$",
    r"^code$",
    r"^section",
    r"^chapter",
    r"^bill",
    r"^total",
    r"^sub.?total",
    r"^ref$",
    r"^page",
]

# Header aliases recognised when locating BoQ columns
HEADER_ALIASES = {
    "description": ["description", "item description", "desc", "particulars", "work description"],
    "unit": ["unit", "units", "uom"],
    "quantity": ["qty", "quantity", "quantities"],
    "rate": ["rate", "unit rate", "price", "unit price"],
}
