"""LLM collaborators: REST clients, the decision gateway and the advisory publish gate."""
