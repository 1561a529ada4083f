"""
Answer generation package.

Builds bounded prompts from ranked schemes and session history, calls the
external generator, and provides templated fallbacks. Retrieval and ranking
happen elsewhere; nothing here decides eligibility.
"""
