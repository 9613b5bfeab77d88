"""seqformer: Transformer encoder/decoder models with incremental decoding."""
