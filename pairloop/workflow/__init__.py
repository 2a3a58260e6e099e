"""Phase state machine, event stream, reviewer look-ahead and the pair engine."""
