"""SpeakTutor — real-time voice language tutor."""
