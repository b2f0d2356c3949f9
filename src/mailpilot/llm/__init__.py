"""Language model access: backends, retry orchestration, prompts and embeddings."""
