"""Keyword and synonym tables used across normalization, scoring and narrative.

Edit these tables instead of redeclaring keywords inside components; the
``Vocabulary`` object in ``be.vocabulary`` is built from them once.
"""

STOP_WORDS = [
    "and", "the", "a", "an", "of", "to", "with", "who", "is", "are",
    "for", "about", "very", "really", "child", "kid", "student", "my",
]

GRADE_SYNONYMS = [
    {
        "band": "lower",
        "synonyms": ["lower", "elementary", "prek-k", "prek", "pre-k", "lower school", "elementary school"],
    },
    {
        "band": "intermediate",
        "synonyms": ["intermediate", "intermediate school"],
    },
    {
        "band": "middle",
        "synonyms": ["middle", "middle school"],
    },
    {
        "band": "upper",
        "synonyms": ["upper", "high", "hs", "upper school", "high school"],
    },
]

GRADE_NEIGHBORS = {
    "lower": ["intermediate"],
    "intermediate": ["lower", "middle"],
    "middle": ["intermediate", "upper"],
    "upper": ["middle"],
}

# Staff without explicit grade bands: first matching title hint wins.
TITLE_GRADE_HINTS = [
    {"contains": ["upper"], "bands": ["upper"]},
    {"contains": ["middle", "6th"], "bands": ["middle"]},
    {"contains": ["lower", "intermediate"], "bands": ["lower"]},
]

# Category -> keywords pulled into the profile when a raw interest touches them.
INTEREST_EXPANSION = {
    "athletics": [
        "sports", "tennis", "soccer", "basketball", "football", "swimming", "track",
        "golf", "volleyball", "competition", "team", "fitness", "athletic",
    ],
    "stem": [
        "science", "technology", "engineering", "math", "robotics", "coding",
        "programming", "computer", "steam", "physics", "chemistry", "biology",
    ],
    "creativity": [
        "arts", "art", "visual", "design", "music", "theater", "drama", "writing",
        "literature", "media", "film", "photography", "creative",
    ],
    "community": [
        "service", "volunteer", "leadership", "mentorship", "church", "faith",
        "spiritual", "religious", "community",
    ],
}

# Coarser table used to check whether each original interest is covered at all.
PRIMARY_INTEREST_SYNONYMS = {
    "stem": ["stem", "science", "technology", "engineering", "math", "steam", "robotics", "coding", "programming"],
    "athletics": [
        "athletics", "athletic", "sports", "sport", "football", "soccer", "lacrosse",
        "baseball", "basketball", "track", "field", "volleyball", "tennis",
    ],
    "arts": ["art", "arts", "creative", "creativity", "theater", "drama", "visual", "design", "performing", "music"],
    "media": ["media", "journalism", "broadcast", "filmmaking", "storytelling", "video"],
    "service": ["service", "community", "volunteer", "leadership", "mentorship"],
    "business": ["business", "entrepreneurship", "economics", "finance"],
    "technology": ["technology", "coding", "computer", "robotics", "programming"],
}

ALUMNI_GATE_PATTERNS = {
    "athletics": r"(athletic|athletics|sport|football|soccer|lacrosse|track|field|volleyball|basketball)",
    "medical": r"(medical|medicine|doctor|pre[-\s]?med|premed|health|healthcare|physician)",
}

VIDEO_HOSTS = ["youtube.com", "youtu.be"]

# Ordered: insights are appended in this order after the base list.
KEY_INSIGHTS = {
    "base": ["Academic Excellence", "Character Development", "Individual Attention"],
    "limit": 4,
    "rules": [
        {"label": "Creative Expression", "interests": ["arts", "creativity", "music", "theater"]},
        {"label": "Athletic Development", "interests": ["athletics", "sports", "competition"]},
        {"label": "STEM Innovation", "interests": ["science", "technology", "stem", "engineering"]},
        {"label": "Leadership & Service", "interests": ["community", "service", "leadership"]},
    ],
}

RECOMMENDED_PROGRAMS = {
    "base": ["College Preparatory Program"],
    "limit": 3,
    "rules": [
        {"label": "Athletics Program", "interests": ["athletics", "sports"], "traits": ["athletic", "competitive"]},
        {
            "label": "Fine Arts Program",
            "interests": ["arts", "creativity", "music", "theater"],
            "traits": ["creative", "artistic"],
        },
        {
            "label": "STEAM Program",
            "interests": ["science", "technology", "stem"],
            "traits": ["analytical", "curious", "smart"],
        },
        {
            "label": "Leadership & Service",
            "interests": ["community", "service", "leadership"],
            "traits": ["kind", "helpful", "leader"],
        },
    ],
}
