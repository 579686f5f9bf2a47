"""ExamPrep practice session service."""
