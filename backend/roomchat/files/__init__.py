"""File upload module for roomchat.

Uploads are never written to disk: the endpoint validates the size and
returns the content as an inline data URL, which the client then sends in a
``send_file_message`` frame. History (and the files in it) lives only in
process memory.
"""
