"""Backend access: HTTP commands, event stream decoding and lifecycle"""
