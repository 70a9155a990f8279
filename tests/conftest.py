"""
Shared pytest fixtures.

The ee module is replaced with a MagicMock so that the Earth Engine
expressions can be checked without credentials or network access.
"""
import matplotlib
matplotlib.use('Agg')

import pytest
from unittest.mock import patch

import forest_plot_matching


class FakeEEException(Exception):
    pass


@pytest.fixture
def mock_ee():
    with patch.object(forest_plot_matching, 'ee') as ee_mock:
        ee_mock.EEException = FakeEEException
        yield ee_mock


@pytest.fixture
def plots_csv(tmp_path):
    path = tmp_path / 'plots.csv'
    path.write_text(
        "plot_id,m_date,lon,lat\n"
        "P1,2019-05-10,23.339927,62.276956\n"
        "P2,2019-08-11,23.339927,62.276956\n"
        "P3,2019-06-05,23.694864,60.437815\n"
        "P4,2019-07-20,26.563850,62.303880\n"
        "P5,2019-08-01,26.563850,62.303880\n"
    )
    return path


@pytest.fixture
def matches_csv(tmp_path):
    path = tmp_path / 'pts_intWithImgs-2019.csv'
    path.write_text(
        "system:index,plot_id,m_date,image_date,pixel_qa,B4,Landsat_ID,.geo\n"
        "0_0,P1,2019-05-10,2019-04-20,322,410,LC08_A,{}\n"
        "0_1,P1,2019-05-10,2019-05-22,322,395,LC08_B,{}\n"
        "0_2,P1,2019-05-10,2019-11-09,322,380,LC08_C,{}\n"
        "1_0,P2,2019-08-11,2019-08-27,352,620,LC08_D,{}\n"
        "1_1,P2,2019-08-11,2019-02-11,322,300,LC08_E,{}\n"
        "1_2,P2,2019-08-11,2020-02-11,322,310,LC08_F,{}\n"
    )
    return path
