"""Message orchestration: debounce, rate limiting, echo guard, dispatch."""
