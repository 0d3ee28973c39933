from imgsmush.tools.chain import run_chain
from imgsmush.tools.discovery import discover_tools, search_path

__all__ = ["discover_tools", "run_chain", "search_path"]
