"""
Audio capture components: source acquisition, mixing, metering and chunk recording.

Import from the submodules directly (`huddle.audio.sources`, `huddle.audio.mixer`, ...).
"""
