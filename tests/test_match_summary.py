"""
Tests for match_summary: checks and summaries on an exported matches table.
"""
import numpy as np
import pandas as pd
import pytest

import forest_plot_matching as fpm
import match_summary as ms


@pytest.fixture
def matches(matches_csv):
    return ms.load_matches(matches_csv)


def test_load_matches_drops_gee_columns(matches):
    assert 'system:index' not in matches.columns
    assert '.geo' not in matches.columns
    assert len(matches) == 6
    assert pd.api.types.is_datetime64_any_dtype(matches['m_date'])
    assert pd.api.types.is_datetime64_any_dtype(matches['image_date'])


def test_load_matches_requires_image_date(tmp_path):
    path = tmp_path / 'matches.csv'
    path.write_text("plot_id,m_date,pixel_qa\nP1,2019-05-10,322\n")

    with pytest.raises(ValueError, match="image_date"):
        ms.load_matches(path)


def test_date_window_months():
    start, end = ms.date_window('2019-05-10', 6, 'month')

    assert start == pd.Timestamp('2018-11-10')
    assert end == pd.Timestamp('2019-11-10')


def test_date_window_clamps_to_month_end():
    start, end = ms.date_window('2019-08-31', 6, 'month')

    assert start == pd.Timestamp('2019-02-28')
    assert end == pd.Timestamp('2020-02-29')


@pytest.mark.parametrize("units,expected_end", [
    ('year', '2020-05-10'),
    ('week', '2019-05-17'),
    ('day', '2019-05-11'),
    ('hour', '2019-05-10 01:00'),
])
def test_date_window_units(units, expected_end):
    _, end = ms.date_window('2019-05-10', 1, units)

    assert end == pd.Timestamp(expected_end)


def test_date_window_rejects_unknown_units():
    with pytest.raises(ValueError):
        ms.date_window('2019-05-10', 6, 'fortnight')


def test_check_within_window(matches):
    inside = ms.check_within_window(matches, 6, 'month')

    # start is inclusive and end exclusive
    assert inside.tolist() == [True, True, True, True, True, False]


def test_add_time_offsets(matches):
    df = ms.add_time_offsets(matches)

    assert df['offset_days'].tolist() == [-20, 12, 183, 16, -181, 184]
    assert 'offset_days' not in matches.columns


def test_nearest_matches(matches):
    nearest = ms.nearest_matches(matches)

    assert nearest['plot_id'].tolist() == ['P1', 'P2']
    assert nearest['Landsat_ID'].tolist() == ['LC08_B', 'LC08_D']


def test_nearest_matches_ties_pick_earliest_image():
    df = pd.DataFrame({
        'plot_id': ['P1', 'P1'],
        'm_date': pd.to_datetime(['2019-05-10', '2019-05-10']),
        'image_date': pd.to_datetime(['2019-05-15', '2019-05-05']),
    })

    nearest = ms.nearest_matches(df)

    assert nearest.loc[0, 'image_date'] == pd.Timestamp('2019-05-05')


def test_unmatched_plots(plots_csv, matches):
    plot_df = fpm.load_plot_table(plots_csv)

    assert ms.unmatched_plots(plot_df, matches) == ['P3', 'P4', 'P5']


def test_is_clear():
    # 322: clear; 352: cloud bit 5; 328: shadow bit 3; NaN: no value
    flags = ms.is_clear([322, 352, 328, np.nan], [3, 5])

    assert flags.tolist() == [True, False, False, False]


def test_flag_cloudy_rows(matches):
    df = ms.flag_cloudy_rows(matches, 'LANDSAT8_C01_SR')

    assert df['cloudy'].tolist() == [False, False, False, True, False, False]


def test_flag_cloudy_rows_needs_qa_column(matches):
    with pytest.raises(ValueError, match="QA_PIXEL"):
        ms.flag_cloudy_rows(matches, 'LANDSAT8_C02_L2')


def test_remove_outliers():
    df = pd.DataFrame({'B4': [0.1] * 20 + [10.0]})

    cleaned = ms.remove_outliers(df, 'B4')

    assert np.isnan(cleaned.loc[20, 'B4'])
    assert cleaned['B4'].notna().sum() == 20
    assert df['B4'].notna().all()


def test_remove_outliers_valid_range():
    df = pd.DataFrame({'NDVI': [0.2, 0.4, 5.0, 0.3]})

    cleaned = ms.remove_outliers(df, 'NDVI', valid_range=(-1, 1))

    assert np.isnan(cleaned.loc[2, 'NDVI'])
    assert cleaned['NDVI'].notna().sum() == 3


def test_create_summary_plots(matches, tmp_path):
    saved = ms.create_summary_plots(matches, str(tmp_path))

    assert len(saved) == 3
    for name in ('01_time_offsets.png', '02_images_per_plot.png', '03_matches_per_month.png'):
        assert (tmp_path / name).exists()


def test_create_summary_plots_empty(tmp_path):
    assert ms.create_summary_plots(pd.DataFrame(), str(tmp_path)) == []


def test_print_summary_statistics(matches, capsys):
    ms.print_summary_statistics(ms.flag_cloudy_rows(matches))

    out = capsys.readouterr().out
    assert "Matches: 6" in out
    assert "Plots with matches: 2" in out
    assert "Rows with cloud bits set: 1" in out


def test_clean_band_values():
    df = pd.DataFrame({
        'plot_id': ['P1', 'P2', 'P3', 'P4', 'P5'],
        'pixel_qa': [322, 322, 322, 322, 65535],
        'B4': [400, 410, 420, 405, 20000],
        'B5': [1500, 1520, 1510, 1490, 1505],
    })

    cleaned = ms.clean_band_values(df, 'LANDSAT8_C01_SR')

    assert np.isnan(cleaned.loc[4, 'B4'])
    assert cleaned['B4'].notna().sum() == 4
    assert cleaned['B5'].notna().all()
    assert cleaned['pixel_qa'].tolist() == df['pixel_qa'].tolist()
