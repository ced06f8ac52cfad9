"""Human-in-the-loop approval of mutating tool calls."""
