from nethermind.batchscope.types.decoding import (
    BatchSummary,
    DecodedCall,
    MultisendBatch,
    SafeDecodeResult,
)

BASE_TRANSACTION_GAS = 21_000
GAS_PER_CALL_WITH_DATA = 15_000


def summarize(sub_calls: list[DecodedCall]) -> BatchSummary:
    """
    Aggregates statistics over the top level sub-calls of a batch.  ``estimated_gas`` is a heuristic of
    21000 + 15000 per sub-call carrying calldata, and does not reflect actual gas usage.
    """
    return BatchSummary(
        sub_transaction_count=len(sub_calls),
        total_value=sum(call.value for call in sub_calls),
        unique_recipient_count=len({call.to.lower() for call in sub_calls}),
        failed_decode_count=sum(1 for call in sub_calls if call.function_name is None),
        estimated_gas=BASE_TRANSACTION_GAS + GAS_PER_CALL_WITH_DATA * sum(1 for call in sub_calls if call.raw_data),
    )


def build_multisend_batch(result: SafeDecodeResult) -> MultisendBatch:
    """Wraps the sub-calls of a Safe decode result with their summary"""
    return MultisendBatch(sub_calls=result.sub_calls, summary=summarize(result.sub_calls), errors=result.errors)
