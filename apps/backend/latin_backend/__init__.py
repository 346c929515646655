"""Latin vocabulary trainer backend (spaced repetition, practice modes, AI tutor chat)."""
