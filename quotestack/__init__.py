"""quotestack – polling quote engine for the terminal dashboard.

Fetches one quote per symbol from the Yahoo chart endpoint under a
bounded-concurrency gate, keeps a rolling price history with RSI / SMA /
MACD indicators, evaluates price alerts and maintains a short-TTL quote
cache.  ``AppState`` composes everything into one refresh cycle that the
batch runner (``python -m quotestack.run``) and the Streamlit dashboard
(``streamlit run streamlit_terminal.py``) both drive.
"""

__version__ = "0.4.0"
