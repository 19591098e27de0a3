"""
Editcrew - Coordinate LLM-backed specialist workers editing a shared project.

A CLI tool and library that:
1. Routes an instruction to direct edits, specialist delegation, or both
2. Runs specialists in parallel under a token budget and reaction rules
3. Detects and resolves conflicting edits to the same file
4. Reviews each round's changes before they are approved
5. Remembers past task outcomes to bias future prompts

Usage:
    editcrew init              # Initialize in current project
    editcrew run "..." -f ...  # Run one coordinated task
    editcrew rules             # Show active reaction rules
    editcrew memory search     # Search past task outcomes
"""

__version__ = "0.1.0"
__author__ = "Editcrew"
