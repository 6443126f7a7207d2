"""Trimmed-down filmweb.pl pages used by the scraper tests."""

SETTINGS = """
<div class="mainSettings__group">
  <div class="mainSettings__groupItemStateContent">Jan</div>
  <div class="mainSettings__groupItemStateContent">jan@example.com</div>
  <div class="mainSettings__groupItemStateContent"> jan_kowalski </div>
</div>
"""

LOGGED_OUT = "<html><body><a class='loginButton'>Zaloguj</a></body></html>"

PROFILE = """
<html><body>
<script class="voteStatsBoxData" type="application/json">{"votes": {"films": 30, "serials": 2}, "w2s": {"films": 3, "serials": 1}}</script>
</body></html>
"""


def vote_box(film_id, title, year, path):
    return f"""
    <div class="myVoteBox">
      <div class="previewFilm" data-film-id="{film_id}">
        <a class="preview__link" href="{path}">{title}</a>
        <span class="preview__year">{year}</span>
      </div>
    </div>
    """


LISTING = (
    "<html><body>"
    + vote_box(1234, "Seksmisja", "1984", "/film/Seksmisja-1984-1234")
    + vote_box(5678, "Rejs", "19x0", "/film/Rejs-1970-5678")
    + '<div class="myVoteBox"><div class="previewFilm">broken</div></div>'
    + "</body></html>"
)

WANT2SEE_LISTING = "<html><body>" + vote_box(42, "Diuna", "2021", "/film/Diuna-2021-42") + "</body></html>"

FILM = '<div class="filmCoverSection__duration" data-duration="117">1 godz. 57 min.</div>'

TITLES = """
<ul>
  <li><div class="filmTitlesSection__title">Sexmission</div><div class="filmTitlesSection__desc">USA</div></li>
  <li><div class="filmTitlesSection__title">Seksmisja</div><div class="filmTitlesSection__desc">tytuł oryginalny</div></li>
</ul>
"""

RATING = '{"rate": 8, "favorite": true, "viewDate": 20190412}'
