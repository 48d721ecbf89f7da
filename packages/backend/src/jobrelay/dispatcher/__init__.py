"""Delivery pipeline — queue consumer pool and notification dispatcher.

Learn: Messages flow through two explicit stages per worker:

  broker.receive → [bounded asyncio.Queue] → process → dispatcher.dispatch
                                                     → registry lookup
                                                     → push to sessions

The bounded queue between pulling and processing is the backpressure
point: a worker stops pulling while its inbox is full. Every ack/nack
decision is made in the processing stage; nothing is ever acknowledged
before its notification was delivered, buffered, or deliberately skipped.
"""
