from unittest.mock import MagicMock
from unittest.mock import patch

import neo4j
import pytest

from rbaclab.client.core.tx import load_graph_data
from rbaclab.client.core.tx import run_write_query
from rbaclab.client.core.tx import write_list_of_dicts_tx


def test_load_graph_data_with_empty_list():
    mock_session = MagicMock()

    load_graph_data(mock_session, "UNWIND $DictList AS data MERGE (n:Node {id: data.id})", [])

    mock_session.execute_write.assert_not_called()


def test_load_graph_data_batches():
    # Arrange
    mock_session = MagicMock()
    query = "UNWIND $DictList AS data MERGE (n:Node {id: data.id})"
    dict_list = [{"id": i} for i in range(5)]

    # Act
    load_graph_data(mock_session, query, dict_list, batch_size=2, UPDATE_TAG=1)

    # Assert
    assert mock_session.execute_write.call_count == 3
    first_call = mock_session.execute_write.call_args_list[0]
    assert first_call.args == (write_list_of_dicts_tx, query)
    assert first_call.kwargs == {"DictList": [{"id": 0}, {"id": 1}], "UPDATE_TAG": 1}
    assert mock_session.execute_write.call_args_list[-1].kwargs["DictList"] == [{"id": 4}]


@pytest.mark.parametrize("batch_size", [0, -1])
def test_load_graph_data_rejects_bad_batch_size(batch_size):
    mock_session = MagicMock()

    with pytest.raises(ValueError, match="batch_size must be greater than 0"):
        load_graph_data(mock_session, "MERGE (n:Node {id: $id})", [{"id": 1}], batch_size=batch_size)


def test_write_list_of_dicts_tx_passes_parameters():
    tx = MagicMock()

    write_list_of_dicts_tx(tx, "QUERY", DictList=[{"id": 1}], UPDATE_TAG=5)

    tx.run.assert_called_once_with("QUERY", {"DictList": [{"id": 1}], "UPDATE_TAG": 5})
    tx.run.return_value.consume.assert_called_once()


@patch("time.sleep")
def test_run_write_query_retries_transient_errors(mock_sleep):
    mock_session = MagicMock()
    mock_session.execute_write.side_effect = [neo4j.exceptions.ServiceUnavailable("down"), None]

    run_write_query(mock_session, "MATCH (n) RETURN n", UPDATE_TAG=1)

    assert mock_session.execute_write.call_count == 2


def test_run_write_query_runs_query_in_transaction():
    mock_session = MagicMock()
    tx = MagicMock()
    mock_session.execute_write.side_effect = lambda func: func(tx)

    run_write_query(mock_session, "MATCH (n) DETACH DELETE n", UPDATE_TAG=7)

    tx.run.assert_called_once_with("MATCH (n) DETACH DELETE n", UPDATE_TAG=7)
