"""
Meeting recordings (staff only).

Upload to storage, then transcribe and summarise inline with OpenAI.
"""
