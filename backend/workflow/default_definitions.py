"""Built-in workflow definitions installed by ``DefinitionService.seed_defaults``."""

HOUR_MS = 60 * 60 * 1000

DEFAULT_DEFINITIONS: list[dict] = [
    {
        "type": "default",
        "name": "Default onboarding",
        "description": "Profile setup after import followed by a single engagement campaign.",
        "config": {"max_retries": 3},
        "steps": [
            {"id": "settle", "action": "wait", "delay": 15 * 60 * 1000,
             "description": "Let the imported account settle"},
            {"id": "prompt", "action": "update_prompt", "critical": True},
            {"id": "bio", "action": "update_bio", "delay": 5 * 60 * 1000},
            {"id": "first_engagement", "action": "run_engagement_campaign",
             "delay": HOUR_MS, "count": 10},
        ],
    },
    {
        "type": "engagement_loop",
        "name": "Perpetual engagement",
        "description": "Profile setup, then low-intensity engagement every six hours, forever.",
        "config": {"max_retries": 3},
        "steps": [
            {"id": "prompt", "action": "update_prompt", "critical": True},
            {"id": "bio", "action": "update_bio"},
            {"id": "rest", "action": "wait", "delay": 6 * HOUR_MS},
            {"id": "engage", "action": "run_engagement_campaign", "count": 15},
            {"id": "loop", "action": "goto", "nextStep": "rest",
             "description": "Back to rest"},
        ],
    },
]
