import logging
from typing import Any
from typing import Dict
from typing import List

import backoff
import neo4j

from rbaclab.util import backoff_handler
from rbaclab.util import batch

logger = logging.getLogger(__name__)

DEFAULT_WRITE_BATCH_SIZE = 10000

RETRYABLE_NEO4J_ERRORS = (
    ConnectionResetError,
    neo4j.exceptions.ServiceUnavailable,
    neo4j.exceptions.SessionExpired,
    neo4j.exceptions.TransientError,
)

retry_transient_errors = backoff.on_exception(
    backoff.expo,
    RETRYABLE_NEO4J_ERRORS,
    max_tries=5,
    on_backoff=backoff_handler,
)


@retry_transient_errors
def run_write_query(neo4j_session: neo4j.Session, query: str, **parameters: Any) -> None:
    """Run a single write query, such as a cleanup statement, in a managed transaction."""

    def _run_query_tx(tx: neo4j.Transaction) -> None:
        tx.run(query, **parameters).consume()

    neo4j_session.execute_write(_run_query_tx)


def write_list_of_dicts_tx(
    tx: neo4j.Transaction,
    query: str,
    **kwargs,
) -> None:
    """
    Transaction function for `UNWIND $DictList` queries.

    Example usage:
        neo4j_session.execute_write(
            write_list_of_dicts_tx,
            '''
            UNWIND $DictList AS data
                MERGE (r:KubernetesRole{id: data.id})
                SET r.lastupdated = $UPDATE_TAG
            ''',
            DictList=roles,
            UPDATE_TAG=update_tag,
        )
    """
    tx.run(query, kwargs).consume()


@retry_transient_errors
def _write_batch(neo4j_session: neo4j.Session, query: str, data_batch: List[Dict[str, Any]], **kwargs) -> None:
    neo4j_session.execute_write(
        write_list_of_dicts_tx,
        query,
        DictList=data_batch,
        **kwargs,
    )


def load_graph_data(
    neo4j_session: neo4j.Session,
    query: str,
    dict_list: List[Dict[str, Any]],
    batch_size: int = DEFAULT_WRITE_BATCH_SIZE,
    **kwargs,
) -> None:
    """
    Write rows to the graph, one transaction per batch. Each batch is retried on its own.
    :param neo4j_session: The Neo4j session
    :param query: The write query. It must UNWIND $DictList.
    :param dict_list: The rows to write.
    :param batch_size: Rows per transaction.
    :param kwargs: Extra query parameters, e.g. UPDATE_TAG.
    """
    if batch_size <= 0:
        raise ValueError(f"batch_size must be greater than 0, got {batch_size}")
    batches = batch(dict_list, size=batch_size)
    for data_batch in batches:
        _write_batch(neo4j_session, query, data_batch, **kwargs)
    logger.debug(f"Wrote {len(dict_list)} rows in {len(batches)} transactions")
