"""Help texts for the input loop and first-run setup."""

from __future__ import annotations

from pathlib import Path

from ata.config import EXAMPLE_TOML

COMMANDS = """\
/help               Show this help
/exit, /quit        Leave (Ctrl-D works too)
/clear              Forget the conversation (the system prompt is kept)
/retry              Regenerate the last reply, replacing it
/save [FILE]        Save the conversation (default: conversation-<unix secs>.json)
/load FILE          Replace the conversation with a saved one
/config             Show the active configuration
/settings           List editable settings
/get NAME           Show one setting
/set NAME VALUE     Change a setting for the following turns

Ctrl-C while a reply is streaming cancels it; the partial reply is kept.
Ctrl-C at the prompt exits (press it twice when ui.double_ctrlc is on).
With ui.multiline_insertions on, Enter starts a new line and Ctrl-D sends.
"""

SHORTCUTS = """\
Ctrl-A, Home        Move cursor to the beginning of line
Ctrl-B, Left        Move cursor one character left
Ctrl-E, End         Move cursor to end of line
Ctrl-F, Right       Move cursor one character right
Ctrl-H, Backspace   Delete character before cursor
Ctrl-K              Delete from cursor to end of line
Ctrl-L              Clear screen
Ctrl-N, Down        Next match from history
Ctrl-P, Up          Previous match from history
Ctrl-R              Reverse search through history
Ctrl-U              Delete from cursor to start of line
Ctrl-W              Delete the previous word
Ctrl-Y              Paste from the kill ring
Meta-B, Alt-Left    Move cursor to previous word
Meta-F, Alt-Right   Move cursor to next word
Meta-D              Delete forwards one word
Meta-Backspace      Delete backwards one word
"""


def missing_config(path: Path) -> str:
    return f"""\
No API key configured. Set OPENAI_API_KEY, or create {path}.

For example, use the following content (the text between the ```):

```
{EXAMPLE_TOML}```

Here, replace `<YOUR SECRET API KEY>` with your API key.

`max_tokens` sets the maximum amount of tokens that the server can answer with.
Longer answers will be truncated.

`temperature` sets the sampling temperature. Higher values make the model take
more risks; 0 picks the most likely token every time. Around 0.8 works well in
practice.
"""
