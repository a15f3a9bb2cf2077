from rollout_stream.tailing.tailer import JsonlTailer, StreamPosition, TailedLine

__all__ = ["JsonlTailer", "StreamPosition", "TailedLine"]
