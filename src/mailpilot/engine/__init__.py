"""Triage engine.

This package provides the core processing stages:
- Thread normalization (quoted-reply stripping, ordering, operator tagging)
- Similarity detection for bulk archive / mark-read offers
- Rolling conversation budget for drafting context
- Operator confirmation dialogs and their pending-interaction store
- The triage loop that ties them together
"""
