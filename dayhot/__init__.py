"""
dayhot - collects AI papers, repositories, feeds and Q&A into one daily store.

Sources:
- arXiv (papers per category)
- GitHub (recently pushed repositories)
- RSS/Atom feeds, including Papers with Code
- Stack Overflow (AI-tagged questions)
"""

__version__ = "0.1.0"
