from tokenvault.services.tokenization.engine import (
    BulkItemResult,
    BulkResult,
    SearchCriteria,
    bulk_detokenize,
    bulk_tokenize,
    cleanup_expired_tokens,
    detokenize,
    extend_expiration,
    get_token,
    get_token_statistics,
    revoke_token,
    search,
    token_projection,
    tokenize,
    update_metadata,
)

__all__ = [
    "BulkItemResult",
    "BulkResult",
    "SearchCriteria",
    "bulk_detokenize",
    "bulk_tokenize",
    "cleanup_expired_tokens",
    "detokenize",
    "extend_expiration",
    "get_token",
    "get_token_statistics",
    "revoke_token",
    "search",
    "token_projection",
    "tokenize",
    "update_metadata",
]
