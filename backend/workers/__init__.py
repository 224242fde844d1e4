# Workers: recurring loops that share state through the database.
# main.py runs both in one process; each can also run on its own from backend/:
#   python -m workers.trade_poller_worker
#   python -m workers.arbitrage_worker
