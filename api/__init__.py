"""HTTP control API for the LLM backend control plane."""
