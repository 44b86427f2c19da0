import pandas as pd
import pytest

from conftest import FakeRecordSource, rec
from muni_finsight.catalog import CatalogEntry, EntityCatalog
from muni_finsight.errors import IntegrationError, ValidationError
from muni_finsight.integrator import DataIntegrator, parse_year
from muni_finsight.presets import exclude_patterns
from muni_finsight.tree import aggregate_value, find_node_by_code

DS = ("gdn", "fs", "010002", "2022")
KEY = "gdn/fs/010002:2022"


def _integrator(records, **kwargs) -> DataIntegrator:
    return DataIntegrator(FakeRecordSource({DS: records}), **kwargs)


def _load(integrator: DataIntegrator, structure, entity_id="010002", model="fs", year="2022"):
    return integrator.load_and_integrate_financial_data(
        entity_id, model, year, structure, "gdn"
    )


def _value(tree, code: str, key: str = KEY):
    value = find_node_by_code(tree, code).values.get(key)
    return None if value is None else value.value


def test_integration_sums_functions_and_routes_by_dimension(structure, sample_records) -> None:
    report = _load(_integrator(sample_records), structure)

    assert _value(structure.income_statement, "300") == pytest.approx(150.0)
    assert _value(structure.income_statement, "4000") == pytest.approx(500.0)
    assert _value(structure.balance_sheet, "100") == pytest.approx(1000.0)
    assert find_node_by_code(structure.income_statement, "300").values[KEY].unit == "CHF"

    assert report.dataset == KEY
    assert report.records_read == 5
    assert report.records_kept == 5
    assert set(report.matched_codes) == {"300", "4000", "100"}
    assert report.unmatched_codes == ("3999",)


def test_unknown_codes_are_listed_not_added(structure, sample_records) -> None:
    _load(_integrator(sample_records), structure)

    assert structure.unused_codes == ["3999"]
    assert set(structure.used_codes) == {"300", "4000", "100"}
    assert find_node_by_code(structure.income_statement, "3999") is None
    # 3999 is not part of the income statement total
    assert aggregate_value(structure.income_statement, KEY) == pytest.approx(350.0)


def test_entity_and_metadata_registered(structure, sample_records) -> None:
    _load(_integrator(sample_records), structure)

    entity = structure.entities[KEY]
    assert entity.year == "2022"
    assert entity.model == "fs"
    assert entity.source == "gdn"
    assert entity.name["de"] == "010002"
    assert entity.metadata.source == "GDN/fs/010002/2022"
    assert entity.metadata.record_count == 5
    assert structure.metadata.source == "GDN/fs/010002/2022"
    assert structure.metadata.record_count == 5


def test_integrating_same_dataset_twice_replaces_values(structure, sample_records) -> None:
    integrator = _integrator(sample_records)
    _load(integrator, structure)
    _load(integrator, structure)

    assert _value(structure.income_statement, "300") == pytest.approx(150.0)
    assert list(structure.entities) == [KEY]
    assert structure.unused_codes == ["3999"]
    assert sorted(structure.used_codes) == ["100", "300", "4000"]


def test_second_entity_accumulates_metadata(structure) -> None:
    source = FakeRecordSource(
        {
            DS: [rec("300", 10)],
            ("gdn", "fs", "010003", "2022"): [rec("300", 20), rec("301", 5)],
        }
    )
    integrator = DataIntegrator(source)
    _load(integrator, structure)
    _load(integrator, structure, entity_id="010003")

    assert structure.metadata.source == "GDN/fs/010003/2022 + GDN/fs/010002/2022"
    assert structure.metadata.record_count == 3
    assert _value(structure.income_statement, "300") == 10.0
    assert _value(structure.income_statement, "300", "gdn/fs/010003:2022") == 20.0
    assert len(structure.entities) == 2


def test_records_before_2015_and_without_dimension_are_dropped(structure) -> None:
    records = [rec("300", 10), rec("301", 99, jahr="2014"), rec("9000", 1)]

    report = _load(_integrator(records), structure)

    assert report.dropped_records == 2
    assert report.records_kept == 1
    assert _value(structure.income_statement, "301") is None


def test_incomplete_records_are_dropped(structure) -> None:
    records = [rec("300", 10), {"arten": "301", "jahr": "2022"}]

    report = _load(_integrator(records), structure)

    assert report.records_read == 2
    assert report.dropped_records == 1
    assert _value(structure.income_statement, "301") is None


def test_unparsable_value_counts_as_zero(structure) -> None:
    _load(_integrator([rec("300", "n/a"), rec("300", "12.5")]), structure)

    assert _value(structure.income_statement, "300") == pytest.approx(12.5)


def test_legacy_column_names_are_accepted(structure) -> None:
    records = pd.DataFrame(
        {"Konto": ["300", "4000"], "Funktion": ["0", "0"], "Jahr": ["2022", "2022"], "Betrag": ["7", "9"]}
    )

    _load(_integrator(records), structure)

    assert _value(structure.income_statement, "300") == 7.0
    assert _value(structure.income_statement, "4000") == 9.0


def test_explicit_dimension_wins_over_code(structure) -> None:
    _load(_integrator([rec("100", 5, dim="bilanz"), rec("300", 1, dim="AUFWAND")]), structure)

    assert _value(structure.balance_sheet, "100") == 5.0
    assert _value(structure.income_statement, "300") == 1.0


@pytest.mark.parametrize(
    "entity_id, model, year, source",
    [
        ("", "fs", "2022", "gdn"),
        ("010002", "", "2022", "gdn"),
        ("010002", "fs", "2014", "gdn"),
        ("010002", "fs", "abc", "gdn"),
        ("010002", "fs", "2022", "xyz"),
    ],
)
def test_invalid_arguments_raise_before_fetch(structure, entity_id, model, year, source) -> None:
    record_source = FakeRecordSource({DS: [rec("300", 1)]})
    integrator = DataIntegrator(record_source)

    with pytest.raises(ValidationError):
        integrator.load_and_integrate_financial_data(entity_id, model, year, structure, source)

    assert record_source.calls == []


def test_parse_year() -> None:
    assert parse_year(" 2015 ") == 2015
    assert parse_year(2030) == 2030
    with pytest.raises(ValidationError, match="2015"):
        parse_year(2010)


def test_fetch_failure_becomes_integration_error(structure) -> None:
    integrator = DataIntegrator(FakeRecordSource(errors={DS: ConnectionError("Network error")}))

    with pytest.raises(IntegrationError) as info:
        _load(integrator, structure)

    assert info.value.dataset == KEY
    assert info.value.reason == "Network error"
    assert str(info.value) == (
        f"Failed to load and integrate financial data for {KEY}: Network error"
    )
    assert structure.entities == {}


@pytest.mark.parametrize("records", [[], [{"arten": "300", "jahr": "2022"}]])
def test_dataset_without_complete_record_fails(structure, records) -> None:
    with pytest.raises(IntegrationError, match="No record"):
        _load(_integrator(records), structure)


@pytest.fixture
def catalog() -> EntityCatalog:
    return EntityCatalog(
        gdn={
            "010002": CatalogEntry(
                entity_id="010002",
                source="gdn",
                name="Aeugst am Albis",
                models={"fs": ["2021", "2022"]},
            )
        },
        cantons={},
    )


@pytest.mark.parametrize(
    "entity_id, model, year, message",
    [
        ("999999", "fs", "2022", "GDN entity '999999' not found"),
        ("010002", "xx", "2022", "Model 'xx' not available for GDN entity '010002'"),
        (
            "010002",
            "fs",
            "2023",
            "Year '2023' not available for GDN entity '010002' with model 'fs'. "
            "Available years: 2021, 2022",
        ),
    ],
)
def test_catalog_rejects_unavailable_datasets(
    structure, catalog, entity_id, model, year, message
) -> None:
    record_source = FakeRecordSource()
    integrator = DataIntegrator(record_source, catalog=catalog)

    with pytest.raises(IntegrationError) as info:
        _load(integrator, structure, entity_id=entity_id, model=model, year=year)

    assert info.value.reason == message
    assert record_source.calls == []


def test_catalog_names_the_entity(structure, catalog) -> None:
    integrator = _integrator([rec("300", 1)], catalog=catalog)
    _load(integrator, structure)

    entity = structure.entities[KEY]
    assert entity.name["fr"] == "Aeugst am Albis"
    assert entity.description["de"] == "Gemeinde Aeugst am Albis (010002)"
    assert entity.description["en"] == "Municipality Aeugst am Albis (010002)"


def test_filter_excludes_records_before_integration(structure) -> None:
    records = [rec("3600", 40), rec("300", 10)]
    integrator = _integrator(records, filter_config=exclude_patterns(["36"]))

    report = _load(integrator, structure)

    assert _value(structure.income_statement, "3600") is None
    assert _value(structure.income_statement, "300") == 10.0
    assert report.filter_result.excluded_codes == ("3600",)
    assert report.filter_result.was_filtered is True
    assert integrator.get_filter_stats().exclude_rules == 1


def test_update_filter_config_applies_to_next_load(structure) -> None:
    integrator = _integrator([rec("3600", 40), rec("300", 10)])
    _load(integrator, structure)
    assert _value(structure.income_statement, "3600") == 40.0

    integrator.update_filter_config(exclude_patterns(["36"]))
    _load(integrator, structure)

    assert _value(structure.income_statement, "3600") is None
    assert integrator.last_report.filter_result.excluded_count == 1


def test_records_with_partial_dimension_column(structure) -> None:
    records = [rec("300", 10), rec("100", 5, dim="bilanz")]

    _load(_integrator(records), structure)

    assert _value(structure.income_statement, "300") == 10.0
    assert _value(structure.balance_sheet, "100") == 5.0
