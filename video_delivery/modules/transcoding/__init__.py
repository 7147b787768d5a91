"""Transcoding module.

Rendition naming, the ffmpeg encoder, the single-job coordinator, delivery
resolution and status notifications.
"""
