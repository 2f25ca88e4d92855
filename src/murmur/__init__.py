# Murmur - Local Push-Button Dictation

"""
On-device dictation engine: capture microphone audio, transcribe it with a
local speech model, and report the result through a serialized session
lifecycle that a UI layer can observe.
"""

__version__ = "0.1.0"
__app_name__ = "Murmur"
