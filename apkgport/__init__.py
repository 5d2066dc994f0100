"""Import Anki packages (.apkg) as Markdown cards."""

__version__ = "0.1.0"
