# USD per 1k tokens: (prompt, completion)
PRICE_TABLE = {
    "gemini-3-pro-preview": (0.002, 0.012),
    "gemini-2.5-pro": (0.00125, 0.01),
    "gemini-2.5-flash": (0.0003, 0.0025),
    "gemini-2.5-flash-lite": (0.0001, 0.0004),
    "gemini-2.0-flash": (0.0001, 0.0004),
    "gemini-1.5-pro": (0.00125, 0.005),
    "gemini-1.5-flash": (0.000075, 0.0003),
    "anthropic/claude-opus-4.5": (0.005, 0.025),
    "anthropic/claude-sonnet-4.5": (0.003, 0.015),
    "openai/gpt-5.2": (0.00175, 0.014),
    "openai/gpt-4o": (0.0025, 0.01),
    "google/gemini-2.5-pro": (0.00125, 0.01),
    "deepseek/deepseek-r1": (0.0004, 0.002),
}


def calculate_cost(model, usage) -> float:
    """Cost of one call; models missing from the table cost nothing."""
    prices = PRICE_TABLE.get(model or "")
    if prices is None or usage is None:
        return 0.0
    prompt_price, completion_price = prices
    return (usage.prompt_tokens / 1000) * prompt_price + (usage.completion_tokens / 1000) * completion_price
